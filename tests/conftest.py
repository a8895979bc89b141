# tests/conftest.py
"""テスト共通のフィクスチャ

- FakeTimerFactory: threading.Timer の代わりに使うタイマー（fire() で手動実行）
- FakeClock: 任意の時刻を返し、advance() で進められる時計
- experiment_config: 実験設定（辞書形式）を作るヘルパー
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest


BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


class FakeTimer:
    """手動で発火させるタイマー"""

    def __init__(self, interval: float, function: Callable[..., Any], args: Sequence[Any] = ()):
        self.interval = interval
        self.function = function
        self.args = tuple(args)
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        """キャンセルされていなければコールバックを実行"""
        if self.started and not self.cancelled and not self.fired:
            self.fired = True
            self.function(*self.args)


class FakeTimerFactory:
    """作成したタイマーを記録するファクトリー"""

    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(
        self,
        interval: float,
        function: Callable[..., Any],
        args: Sequence[Any] = (),
    ) -> FakeTimer:
        timer = FakeTimer(interval, function, args)
        self.timers.append(timer)
        return timer

    @property
    def live(self) -> List[FakeTimer]:
        """開始済みでキャンセル・発火していないタイマー"""
        return [t for t in self.timers if t.started and not t.cancelled and not t.fired]

    def fire_all(self) -> None:
        for timer in list(self.live):
            timer.fire()


class FakeClock:
    """テスト用の時計"""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def timer_factory() -> FakeTimerFactory:
    return FakeTimerFactory()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def experiment_config() -> Callable[..., Dict[str, Any]]:
    """実験設定を作るヘルパー

    使用例:
        config = experiment_config(status="active", method="hash")
    """

    def _build(
        experiment_id: str = "exp_checkout",
        status: str = "active",
        method: str = "random",
        variations: Optional[List[Dict[str, Any]]] = None,
        metrics: Optional[List[Dict[str, Any]]] = None,
        include: Optional[List[str]] = None,
        exclude: Optional[List[str]] = None,
        start_time: datetime = BASE_TIME,
        end_time: Optional[datetime] = None,
        min_sample_size: int = 100,
        power: float = 0.8,
    ) -> Dict[str, Any]:
        return {
            "id": experiment_id,
            "name": f"Experiment {experiment_id}",
            "status": status,
            "variations": variations or [
                {"id": "control", "name": "Control", "traffic": 50, "is_control": True,
                 "config": {"button_color": "blue"}},
                {"id": "variant", "name": "Variant", "traffic": 50,
                 "config": {"button_color": "green"}},
            ],
            "metrics": metrics or [
                {"id": "revenue", "type": "numeric", "priority": "primary"},
            ],
            "allocation": {
                "method": method,
                "criteria": {"include": include or [], "exclude": exclude or []},
            },
            "duration": {
                "start_time": start_time,
                "end_time": end_time or start_time + timedelta(days=14),
                "min_sample_size": min_sample_size,
            },
            "statistics": {
                "confidence_level": 0.95,
                "minimum_detectable_effect": 0.05,
                "power": power,
            },
        }

    return _build
