# メトリクスイベントの記録
"""
MetricLedger: 参加者ごとのメトリクス観測値を追記のみで保持する

保持ルール:
- 全実験共通のバッファに上限（デフォルト 10,000件）を設け、超えた分は古い順に破棄
- 同じイベントを参加者の割り当て記録（ParticipantAssignment.events）にも追加
- 保持期間を過ぎたイベントは LifecycleScheduler の定期スイープで削除
"""

import logging
import uuid
from collections import deque
from datetime import datetime
from threading import Lock
from typing import Any, Deque, Dict, List, Mapping, Optional, Union

from src.ab_testing.models import MetricEvent, ParticipantAssignment


logger = logging.getLogger(__name__)


class MetricLedger:
    """上限付きのイベントバッファ

    Attributes:
        max_events: バッファ上限
        _events: 古い順に並んだイベント
    """

    def __init__(self, max_events: int = 10000):
        self.max_events = max_events
        self._events: Deque[MetricEvent] = deque(maxlen=max_events)
        self._lock = Lock()

    def record(
        self,
        assignment: ParticipantAssignment,
        metric_id: str,
        value: Union[float, bool],
        metadata: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> MetricEvent:
        """イベントを記録

        Args:
            assignment: 記録対象の参加者の割り当て
            metric_id: メトリクスID
            value: 観測値（bool は 1 / 0 として集計される）
            metadata: 任意のメタデータ
            timestamp: 観測時刻

        Returns:
            作成した MetricEvent
        """
        event = MetricEvent(
            id=str(uuid.uuid4()),
            experiment_id=assignment.experiment_id,
            participant_id=assignment.participant_id,
            variation_id=assignment.variation_id,
            metric_id=metric_id,
            value=value,
            timestamp=timestamp or datetime.now(),
            metadata=dict(metadata or {}),
        )

        with self._lock:
            if len(self._events) == self.max_events:
                logger.debug(f"バッファ上限に到達、最古のイベントを破棄: max={self.max_events}")
            self._events.append(event)
            assignment.events.append(event)

        return event

    def events_for(
        self,
        experiment_id: str,
        variation_id: Optional[str] = None,
        metric_id: Optional[str] = None,
    ) -> List[MetricEvent]:
        """条件に一致するイベントを古い順に返す"""
        with self._lock:
            return [
                e for e in self._events
                if e.experiment_id == experiment_id
                and (variation_id is None or e.variation_id == variation_id)
                and (metric_id is None or e.metric_id == metric_id)
            ]

    def count(
        self,
        experiment_id: str,
        variation_id: Optional[str] = None,
        metric_id: Optional[str] = None,
    ) -> int:
        return len(self.events_for(experiment_id, variation_id, metric_id))

    def counts_by_experiment(self) -> Dict[str, int]:
        with self._lock:
            counts: Dict[str, int] = {}
            for event in self._events:
                counts[event.experiment_id] = counts.get(event.experiment_id, 0) + 1
            return counts

    def purge_experiment(self, experiment_id: str) -> int:
        """実験のイベントを全て削除

        Returns:
            削除件数
        """
        return self._retain(lambda e: e.experiment_id != experiment_id)

    def purge_older_than(self, cutoff: datetime) -> int:
        """cutoff より前のイベントを削除

        Returns:
            削除件数
        """
        return self._retain(lambda e: e.timestamp >= cutoff)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    # ===== Private Methods =====

    def _retain(self, keep) -> int:
        with self._lock:
            before = len(self._events)
            self._events = deque((e for e in self._events if keep(e)), maxlen=self.max_events)
            return before - len(self._events)
