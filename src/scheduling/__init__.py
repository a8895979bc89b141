# src/scheduling/__init__.py
"""スケジューリングモジュール

実験エンジンのバックグラウンド処理。
分析のデバウンスと保持期間スイープの定期実行を提供する。
"""

from src.scheduling.lifecycle_scheduler import (
    LifecycleScheduler,
    default_timer_factory,
)

__all__ = [
    "LifecycleScheduler",
    "default_timer_factory",
]
