# A/Bテスト実験管理
"""
ExperimentManager: 実験エンジンの公開API

構成要素（全てコンストラクタで作成し、グローバルなインスタンスは持たない）:
    ExperimentRegistry   実験設定・分析結果
    AssignmentEngine     参加者の割り当て
    MetricLedger         メトリクスイベント
    StatisticalAnalyzer  統計分析
    RecommendationEngine 推奨事項
    LifecycleScheduler   分析のデバウンス・保持期間スイープ

設計方針:
- assign / track は同期的でブロックしない。重い分析はデバウンス後にタイマースレッドで実行
- 存在しない・active でない実験への呼び出しは None を返すか何もしない
- 不正な設定は ValidationError（部分的に適用されることはない）
"""

import asyncio
import logging
import random
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from src.ab_testing.analyzer import StatisticalAnalyzer
from src.ab_testing.assignment import AssignmentEngine
from src.ab_testing.ledger import MetricLedger
from src.ab_testing.models import (
    Experiment,
    ExperimentResults,
    ExperimentStatus,
    MetricEvent,
    ParticipantAssignment,
    Recommendation,
)
from src.ab_testing.recommendation import RecommendationEngine
from src.ab_testing.registry import ExperimentRegistry
from src.ab_testing.statistics import required_sample_size
from src.config.experiment_config import ExperimentEngineConfig
from src.monitoring.metrics_collector import MetricsCollector, Stopwatch
from src.scheduling.lifecycle_scheduler import LifecycleScheduler, TimerFactory


logger = logging.getLogger(__name__)

EventHandler = Callable[[MetricEvent], Any]

_FINISHED_STATUSES = (ExperimentStatus.COMPLETED, ExperimentStatus.CANCELLED)


class ExperimentManager:
    """実験エンジンのファサード

    使用例:
        manager = ExperimentManager()

        # 実験作成
        manager.create_experiment({
            "id": "checkout_button",
            "name": "Checkout button color",
            "status": "active",
            "variations": [
                {"id": "control", "name": "Blue", "traffic": 50, "is_control": True},
                {"id": "green", "name": "Green", "traffic": 50, "config": {"color": "green"}},
            ],
            "metrics": [{"id": "purchase", "type": "conversion"}],
        })

        # 割り当てとイベント記録
        variation_id = manager.assign("checkout_button", "user-42")
        manager.track("checkout_button", "user-42", "purchase", True)

        # 分析と推奨事項
        results = manager.analyze("checkout_button")
        recommendations = manager.get_recommendations("checkout_button")

    Attributes:
        config: エンジン設定
        registry: 実験レジストリ
        assignments: 割り当てエンジン
        ledger: イベントの記録
        scheduler: デバウンス・定期スイープ
        metrics: エンジンのメトリクス
    """

    def __init__(
        self,
        config: Optional[ExperimentEngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        metrics: Optional[MetricsCollector] = None,
        timer_factory: Optional[TimerFactory] = None,
    ):
        """ExperimentManagerを初期化

        Args:
            config: エンジン設定。Noneの場合はデフォルト設定（環境変数で上書き可能）
            clock: 現在時刻を返す関数（テストで差し替え可能）
            rng: random 割り当て用の乱数生成器
            metrics: メトリクスコレクター
            timer_factory: デバウンス・スイープ用のタイマー生成関数

        Raises:
            ValueError: 設定が不正な場合
        """
        self.config = config or ExperimentEngineConfig()
        self.config.validate()

        self.clock = clock or datetime.now
        self.metrics = metrics or MetricsCollector()

        self.registry = ExperimentRegistry(
            default_duration_days=self.config.default_duration_days,
            default_min_sample_size=self.config.default_min_sample_size,
        )
        self.assignments = AssignmentEngine(rng)
        self.ledger = MetricLedger(self.config.max_event_buffer)
        self.analyzer = StatisticalAnalyzer(self.config)
        self.recommender = RecommendationEngine()
        self.scheduler = LifecycleScheduler(
            on_analyze=self._analyze_scheduled,
            on_sweep=self.run_retention_sweep,
            config=self.config,
            timer_factory=timer_factory,
        )

        self._handlers: List[EventHandler] = []
        self._handlers_lock = Lock()

    # === 実験の管理 ===

    def create_experiment(self, config: Union[Experiment, Mapping[str, Any]]) -> Experiment:
        """実験を登録

        Raises:
            ValidationError: 設定が不正な場合
        """
        experiment = self.registry.create(config, now=self.clock())
        self._refresh_active_gauge()
        return experiment

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        return self.registry.get(experiment_id)

    def get_active_experiments(self) -> List[Experiment]:
        return self.registry.list_active()

    def set_status(
        self,
        experiment_id: str,
        status: Union[ExperimentStatus, str],
    ) -> None:
        """ステータスを変更（存在しない実験は無視）"""
        self.registry.set_status(experiment_id, status)
        self._refresh_active_gauge()

    def clear(self, experiment_id: str) -> None:
        """実験と関連データ（割り当て・イベント・予約済みの分析）を削除"""
        self.scheduler.cancel(experiment_id)
        existed = self.registry.remove(experiment_id)
        removed_assignments = self.assignments.purge_experiment(experiment_id)
        removed_events = self.ledger.purge_experiment(experiment_id)
        self.metrics.forget_experiment(experiment_id)

        self._refresh_active_gauge()
        self.metrics.record_ledger_size(len(self.ledger))

        if existed:
            logger.info(
                f"実験を削除: experiment_id={experiment_id}, "
                f"assignments={removed_assignments}, events={removed_events}"
            )
        else:
            logger.debug(f"削除対象の実験なし: experiment_id={experiment_id}")

    # === 割り当て ===

    def assign(
        self,
        experiment_id: str,
        participant_id: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        """参加者をバリエーションに割り当て

        同じ参加者には実験の期間中、常に同じバリエーションを返す。

        Args:
            experiment_id: 実験ID
            participant_id: 参加者ID
            metadata: 参加条件の判定に使うメタデータ

        Returns:
            バリエーションID。実験が存在しない・active でない・参加条件を満たさない場合 None
        """
        experiment = self.registry.get(experiment_id)
        if experiment is None:
            logger.debug(f"割り当てスキップ（実験なし）: experiment_id={experiment_id}")
            self.metrics.record_assignment_skipped("unknown")
            return None

        if not experiment.is_active:
            logger.debug(
                f"割り当てスキップ（非アクティブ）: experiment_id={experiment_id}, "
                f"status={experiment.status.value}"
            )
            self.metrics.record_assignment_skipped("inactive")
            return None

        decision = self.assignments.assign(experiment, participant_id, metadata, self.clock())
        if decision.variation_id is None:
            self.metrics.record_assignment_skipped(decision.reason)
            return None

        if decision.is_new:
            self.registry.record_assignment(experiment_id, decision.variation_id)
            self.metrics.record_assignment(experiment_id, decision.variation_id)

        return decision.variation_id

    def get_assignment(
        self,
        experiment_id: str,
        participant_id: str,
    ) -> Optional[ParticipantAssignment]:
        return self.assignments.get_assignment(experiment_id, participant_id)

    def get_variation_config(
        self,
        experiment_id: str,
        participant_id: str,
    ) -> Optional[Dict[str, Any]]:
        """割り当て済みバリエーションの設定ペイロード

        Returns:
            設定のコピー。未割り当て・実験なしの場合 None
        """
        assignment = self.assignments.get_assignment(experiment_id, participant_id)
        if assignment is None:
            return None

        experiment = self.registry.get(experiment_id)
        if experiment is None:
            return None

        variation = experiment.get_variation(assignment.variation_id)
        if variation is None:
            return None
        return dict(variation.config)

    # === イベント記録 ===

    def track(
        self,
        experiment_id: str,
        participant_id: str,
        metric_id: str,
        value: Union[float, bool],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """メトリクスの観測値を記録

        実験が active で、参加者が割り当て済みの場合のみ記録する。
        記録後にイベントハンドラーへ通知し、分析を予約する。
        """
        experiment = self.registry.get(experiment_id)
        if experiment is None or not experiment.is_active:
            logger.debug(
                f"記録スキップ（実験なし・非アクティブ）: experiment_id={experiment_id}"
            )
            return

        assignment = self.assignments.get_assignment(experiment_id, participant_id)
        if assignment is None:
            logger.debug(
                f"記録スキップ（未割り当て）: experiment_id={experiment_id}, "
                f"participant_id={participant_id}"
            )
            return

        event = self.ledger.record(assignment, metric_id, value, metadata, self.clock())
        self.metrics.record_event_tracked(experiment_id)
        self.metrics.record_ledger_size(len(self.ledger))

        self._notify(event)
        self.scheduler.schedule_analysis(experiment_id)

    def on_event(self, handler: EventHandler) -> None:
        """イベントハンドラーを登録（記録のたびに MetricEvent を渡して呼ぶ）"""
        with self._handlers_lock:
            self._handlers.append(handler)

    # === 分析 ===

    def analyze(self, experiment_id: str) -> Optional[ExperimentResults]:
        """実験を分析して結果を保存

        Returns:
            ExperimentResults。実験が存在しない場合 None
        """
        return self._analyze(experiment_id, trigger="manual")

    async def analyze_async(self, experiment_id: str) -> Optional[ExperimentResults]:
        """analyze を別スレッドで実行"""
        return await asyncio.to_thread(self._analyze, experiment_id, "async")

    def get_results(self, experiment_id: str) -> Optional[ExperimentResults]:
        """最後に保存した分析結果（未分析ならゼロ初期化された結果）"""
        return self.registry.get_results(experiment_id)

    def get_recommendations(
        self,
        experiment_id: str,
        refresh: bool = False,
    ) -> List[Recommendation]:
        """推奨事項を生成

        Args:
            experiment_id: 実験ID
            refresh: True なら先に分析をやり直す

        Returns:
            信頼度の降順に並べた推奨事項。実験が存在しない場合は空
        """
        experiment = self.registry.get(experiment_id)
        if experiment is None:
            return []

        results = self._analyze(experiment_id, "manual") if refresh else None
        if results is None:
            results = self.registry.get_results(experiment_id)
        if results is None:
            return []

        return self.recommender.recommend(experiment, results, self.clock())

    def generate_report(self, experiment_id: str) -> Optional[Dict[str, Any]]:
        """実験のサマリーレポート（辞書形式）

        Returns:
            実験設定・サンプル数・バリエーション別の集計・検定結果・勝者・推奨事項
        """
        experiment = self.registry.get(experiment_id)
        results = self.registry.get_results(experiment_id)
        if experiment is None or results is None:
            return None

        recommendations = self.recommender.recommend(experiment, results, self.clock())
        results_dict = results.to_dict()
        return {
            "experiment": experiment.to_dict(),
            "sample_size": results_dict["sample_size"],
            "variations": results_dict["variations"],
            "tests": results_dict["tests"],
            "overall_significance": results.overall_significance,
            "power": results_dict["power"],
            "winner": results_dict["winner"],
            "recommendations": [r.to_dict() for r in recommendations],
            "analyzed_at": results_dict["analyzed_at"],
            "generated_at": self.clock().isoformat(),
        }

    def estimate_sample_size(
        self,
        baseline_rate: float,
        minimum_detectable_effect: float,
        power: float = 0.8,
        alpha: Optional[float] = None,
    ) -> int:
        """コンバージョン実験のバリエーションあたりの必要サンプル数

        Raises:
            ValueError: 入力が範囲外の場合
        """
        return required_sample_size(
            baseline_rate,
            minimum_detectable_effect,
            alpha=self.config.significance_level if alpha is None else alpha,
            power=power,
        )

    # === 保持期間・スケジューラー ===

    def run_retention_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """保持期間を過ぎたデータを削除

        - retention_days より古いイベント
        - 実験が completed / cancelled / 存在しない割り当て、または retention_days より前の割り当て
        - completed / cancelled / 存在しない実験の割り当てキャッシュ

        Returns:
            {"events": 削除件数, "assignments": 削除件数}
        """
        now = now or self.clock()
        cutoff = now - timedelta(days=self.config.retention_days)

        def is_finished(experiment_id: str) -> bool:
            experiment = self.registry.get(experiment_id)
            return experiment is None or experiment.status in _FINISHED_STATUSES

        removed_events = self.ledger.purge_older_than(cutoff)
        removed_assignments = self.assignments.purge(
            lambda a: is_finished(a.experiment_id) or a.assigned_at < cutoff,
            should_forget=is_finished,
        )

        self.metrics.record_retention_purge("events", removed_events)
        self.metrics.record_retention_purge("assignments", removed_assignments)
        self.metrics.record_ledger_size(len(self.ledger))

        logger.info(
            f"保持期間スイープ完了: cutoff={cutoff.isoformat()}, "
            f"events={removed_events}, assignments={removed_assignments}"
        )
        return {"events": removed_events, "assignments": removed_assignments}

    def start_scheduler(self) -> None:
        """定期スイープを開始"""
        self.scheduler.start()

    def shutdown(self, flush: bool = False) -> None:
        """スケジューラーを停止

        Args:
            flush: True なら予約済みの分析を実行してから停止
        """
        if flush:
            self.scheduler.flush()
        self.scheduler.stop()

    # ===== Private Methods =====

    def _analyze(self, experiment_id: str, trigger: str) -> Optional[ExperimentResults]:
        experiment = self.registry.get(experiment_id)
        if experiment is None:
            logger.debug(f"分析対象の実験なし: experiment_id={experiment_id}")
            return None

        with Stopwatch() as stopwatch:
            results = self.analyzer.analyze(
                experiment,
                self.ledger.events_for(experiment_id),
                self.registry.sample_sizes(experiment_id),
                now=self.clock(),
            )
            stored = self.registry.store_results(experiment_id, results)

        self.metrics.record_analysis(trigger, stopwatch.elapsed)

        if not stored:
            logger.debug(f"分析中に実験が削除された: experiment_id={experiment_id}")
            return None

        logger.info(
            f"実験を分析: experiment_id={experiment_id}, trigger={trigger}, "
            f"samples={results.sample_size.total}, "
            f"significant={results.overall_significance}, "
            f"winner={results.winner.variation_id if results.winner else None}"
        )
        return results

    def _analyze_scheduled(self, experiment_id: str) -> None:
        self._analyze(experiment_id, trigger="debounce")

    def _notify(self, event: MetricEvent) -> None:
        """イベントハンドラーへ通知（例外はログに残して次のハンドラーへ進む）"""
        with self._handlers_lock:
            handlers = list(self._handlers)

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self.metrics.record_handler_error()
                logger.exception(
                    f"イベントハンドラーでエラー: experiment_id={event.experiment_id}, "
                    f"metric_id={event.metric_id}"
                )

    def _refresh_active_gauge(self) -> None:
        self.metrics.record_active_experiments(len(self.registry.list_active()))
