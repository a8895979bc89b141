# src/monitoring/__init__.py
"""監視モジュール

実験エンジンのメトリクス収集（インプロセスのみ）を提供する。
"""

from src.monitoring.metrics_collector import (
    MetricsCollector,
    Counter,
    Gauge,
    Histogram,
    InstrumentType,
    Stopwatch,
)

__all__ = [
    "MetricsCollector",
    "Counter",
    "Gauge",
    "Histogram",
    "InstrumentType",
    "Stopwatch",
]
