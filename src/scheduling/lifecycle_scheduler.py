# 実験のライフサイクルスケジューラー
"""
LifecycleScheduler: 分析のデバウンスと保持期間スイープの定期実行

デバウンス:
    実験ごとに最大1つのタイマーを保持する。イベント記録のたびに既存のタイマーを
    キャンセルして差し替えるため、連続したイベントの後で分析は1回だけ走る。

定期スイープ:
    start() で開始し、cleanup_interval_seconds ごとに on_sweep を呼ぶ。
    stop() で停止する。

タイマーは timer_factory で差し替え可能（デフォルトは daemon の threading.Timer）。
コールバックの例外はタイマースレッド上で捕捉してログに残す。
"""

import logging
import threading
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Sequence

from src.config.experiment_config import ExperimentEngineConfig


logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable[..., Any], Sequence[Any]], Any]


def default_timer_factory(
    interval: float,
    function: Callable[..., Any],
    args: Sequence[Any] = (),
) -> threading.Timer:
    """daemon スレッドの threading.Timer を作成（start は呼び出し側）"""
    timer = threading.Timer(interval, function, args=list(args))
    timer.daemon = True
    return timer


@dataclass
class _PendingAnalysis:
    """デバウンス中の分析（token で最新のタイマーかを判定する）"""
    token: object
    timer: Any


class LifecycleScheduler:
    """分析のデバウンスと定期スイープ

    Attributes:
        _pending: 実験ID → デバウンス中の分析
        _sweep_timer: 次回のスイープ用タイマー
    """

    def __init__(
        self,
        on_analyze: Callable[[str], Any],
        on_sweep: Callable[[], Any],
        config: Optional[ExperimentEngineConfig] = None,
        timer_factory: Optional[TimerFactory] = None,
    ):
        """
        Args:
            on_analyze: デバウンス後に実験IDを渡して呼ぶ関数
            on_sweep: 定期スイープで呼ぶ関数
            config: エンジン設定（デバウンス秒数・スイープ間隔）
            timer_factory: (interval, function, args) → start()/cancel() を持つタイマー
        """
        self.config = config or ExperimentEngineConfig()
        self.on_analyze = on_analyze
        self.on_sweep = on_sweep
        self.timer_factory = timer_factory or default_timer_factory

        self._pending: Dict[str, _PendingAnalysis] = {}
        self._sweep_timer: Optional[Any] = None
        self._running = False
        self._lock = Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    # === デバウンス ===

    def schedule_analysis(self, experiment_id: str) -> None:
        """分析を予約（既存の予約は差し替え）"""
        token = object()
        timer = self.timer_factory(
            self.config.debounce_seconds, self._fire_analysis, (experiment_id, token)
        )

        with self._lock:
            previous = self._pending.pop(experiment_id, None)
            if previous is not None:
                previous.timer.cancel()
            self._pending[experiment_id] = _PendingAnalysis(token=token, timer=timer)

        # start はロックの外で呼ぶ（タイマーは同期的に発火してもよい）
        timer.start()

        logger.debug(
            f"分析を予約: experiment_id={experiment_id}, "
            f"delay={self.config.debounce_seconds}s, replaced={previous is not None}"
        )

    def cancel(self, experiment_id: str) -> bool:
        """予約済みの分析をキャンセル

        Returns:
            予約が存在した場合 True
        """
        with self._lock:
            pending = self._pending.pop(experiment_id, None)
        if pending is None:
            return False
        pending.timer.cancel()
        logger.debug(f"分析の予約をキャンセル: experiment_id={experiment_id}")
        return True

    def pending(self) -> List[str]:
        """分析待ちの実験ID"""
        with self._lock:
            return list(self._pending.keys())

    def has_pending(self, experiment_id: str) -> bool:
        with self._lock:
            return experiment_id in self._pending

    def flush(self) -> List[str]:
        """予約済みの分析を全て即時実行（呼び出しスレッドで同期実行）

        Returns:
            実行した実験ID
        """
        with self._lock:
            pending = self._pending
            self._pending = {}

        for entry in pending.values():
            entry.timer.cancel()

        for experiment_id in pending:
            self._run_analysis(experiment_id)

        if pending:
            logger.info(f"予約済みの分析を実行: {len(pending)} 件")
        return list(pending.keys())

    # === 定期スイープ ===

    def start(self) -> None:
        """定期スイープを開始（実行中なら何もしない）"""
        with self._lock:
            if self._running:
                return
            self._running = True
            timer = self._arm_sweep()
        timer.start()

        logger.info(
            f"ライフサイクルスケジューラーを開始: "
            f"cleanup_interval={self.config.cleanup_interval_seconds}s"
        )

    def stop(self) -> None:
        """定期スイープと予約済みの分析を全て停止"""
        with self._lock:
            self._running = False
            sweep_timer = self._sweep_timer
            self._sweep_timer = None
            pending = self._pending
            self._pending = {}

        if sweep_timer is not None:
            sweep_timer.cancel()
        for entry in pending.values():
            entry.timer.cancel()

        logger.info(f"ライフサイクルスケジューラーを停止: 破棄した予約={len(pending)} 件")

    # ===== Private Methods =====

    def _fire_analysis(self, experiment_id: str, token: object) -> None:
        """タイマースレッドから呼ばれる"""
        with self._lock:
            pending = self._pending.get(experiment_id)
            if pending is None or pending.token is not token:
                return
            del self._pending[experiment_id]

        self._run_analysis(experiment_id)

    def _run_analysis(self, experiment_id: str) -> None:
        try:
            self.on_analyze(experiment_id)
        except Exception:
            logger.exception(f"予約された分析に失敗: experiment_id={experiment_id}")

    def _arm_sweep(self) -> Any:
        """次回のスイープ用タイマーを作成（ロック保持中に呼び、start はロック解放後）"""
        timer = self.timer_factory(self.config.cleanup_interval_seconds, self._fire_sweep, ())
        self._sweep_timer = timer
        return timer

    def _fire_sweep(self) -> None:
        try:
            self.on_sweep()
        except Exception:
            logger.exception("保持期間スイープに失敗")

        with self._lock:
            if not self._running:
                return
            timer = self._arm_sweep()
        timer.start()
