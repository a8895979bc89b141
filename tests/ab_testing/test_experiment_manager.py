# ExperimentManager テスト
"""
ExperimentManagerの単体テスト

検証観点:
- 実験の登録・取得・ステータス変更・削除
- 割り当て: 実験なし・非アクティブ・参加条件・安定性・カウンター
- 記録: 記録条件、イベントハンドラー、分析のデバウンス
- 分析・推奨事項・レポート
- 保持期間スイープと割り当てキャッシュ

時計・タイマー・乱数は全て差し替え、スリープせずに実行する。
"""

import logging
import random
from datetime import timedelta

import pytest

from src.ab_testing.experiment_manager import ExperimentManager
from src.ab_testing.models import ExperimentStatus, RecommendationType
from src.ab_testing.registry import ValidationError
from src.config.experiment_config import ExperimentEngineConfig


CONTROL_VALUES = [120, 130, 110, 140, 125]
VARIANT_VALUES = [180, 190, 170, 200, 185]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def config():
    """テスト用設定"""
    return ExperimentEngineConfig(
        debounce_seconds=10.0,
        cleanup_interval_seconds=86400,
        retention_days=30,
        max_event_buffer=10000,
    )


@pytest.fixture
def manager(config, clock, timer_factory):
    """ExperimentManagerインスタンス"""
    return ExperimentManager(
        config=config,
        clock=clock,
        rng=random.Random(42),
        timer_factory=timer_factory,
    )


@pytest.fixture
def experiment(manager, experiment_config):
    """active な実験（random 割り当て、revenue メトリクス）"""
    return manager.create_experiment(experiment_config())


def populate(manager, participants=40, experiment_id="exp_checkout", metric_id="revenue"):
    """参加者を割り当て、バリエーションごとに決まった値を記録"""
    groups = {}
    for i in range(participants):
        participant_id = f"user-{i}"
        variation_id = manager.assign(experiment_id, participant_id)
        groups.setdefault(variation_id, []).append(participant_id)

    for variation_id, members in groups.items():
        values = CONTROL_VALUES if variation_id == "control" else VARIANT_VALUES
        for i, participant_id in enumerate(members):
            manager.track(experiment_id, participant_id, metric_id, values[i % len(values)])
    return groups


# ============================================================================
# 実験の管理
# ============================================================================


class TestExperimentManagement:
    """create / get / set_status / clear のテスト"""

    def test_create_and_get(self, manager, experiment):
        assert manager.get_experiment("exp_checkout") is experiment
        assert experiment.status == ExperimentStatus.ACTIVE
        assert manager.get_active_experiments() == [experiment]

    def test_create_updates_active_gauge(self, manager, experiment_config):
        manager.create_experiment(experiment_config(experiment_id="a"))
        manager.create_experiment(experiment_config(experiment_id="b", status="draft"))

        assert manager.metrics.get_gauge("active_experiments").get() == 1.0

    def test_unanalyzed_results_are_zeroed(self, manager, experiment):
        results = manager.get_results("exp_checkout")

        assert results.sample_size.total == 0
        assert results.sample_size.by_variation == {"control": 0, "variant": 0}
        assert results.tests == []
        assert results.winner is None

    def test_invalid_experiment_is_rejected(self, manager, experiment_config):
        config = experiment_config(variations=[
            {"id": "control", "traffic": 70},
            {"id": "variant", "traffic": 70},
        ])

        with pytest.raises(ValidationError):
            manager.create_experiment(config)
        assert manager.get_experiment("exp_checkout") is None

    def test_get_unknown(self, manager):
        assert manager.get_experiment("missing") is None
        assert manager.get_results("missing") is None

    def test_set_status(self, manager, experiment):
        manager.set_status("exp_checkout", "paused")

        assert experiment.status == ExperimentStatus.PAUSED
        assert manager.get_active_experiments() == []
        assert manager.metrics.get_gauge("active_experiments").get() == 0.0

    def test_set_status_unknown_is_ignored(self, manager):
        manager.set_status("missing", ExperimentStatus.COMPLETED)

    def test_set_status_invalid_value(self, manager, experiment):
        with pytest.raises(ValueError):
            manager.set_status("exp_checkout", "archived")

    def test_clear_removes_everything(self, manager, experiment, timer_factory):
        manager.assign("exp_checkout", "user-1")
        manager.track("exp_checkout", "user-1", "revenue", 10.0)

        manager.clear("exp_checkout")

        assert manager.get_experiment("exp_checkout") is None
        assert manager.get_results("exp_checkout") is None
        assert manager.get_assignment("exp_checkout", "user-1") is None
        assert manager.ledger.count("exp_checkout") == 0
        assert not manager.scheduler.has_pending("exp_checkout")
        assert timer_factory.live == []

    def test_clear_leaves_other_experiments(self, manager, experiment_config):
        manager.create_experiment(experiment_config(experiment_id="a"))
        manager.create_experiment(experiment_config(experiment_id="b"))
        manager.assign("a", "user-1")
        manager.assign("b", "user-1")
        manager.track("b", "user-1", "revenue", 5.0)

        manager.clear("a")

        assert manager.get_experiment("b") is not None
        assert manager.get_assignment("b", "user-1") is not None
        assert manager.ledger.count("b") == 1

    def test_clear_drops_experiment_caches_and_metric_labels(self, manager, experiment_config):
        """削除した実験の sticky キャッシュとメトリクス系列は残らない"""
        manager.create_experiment(experiment_config(experiment_id="a", method="sticky"))
        manager.create_experiment(experiment_config(experiment_id="b", method="sticky"))
        manager.assign("a", "user-1")
        manager.assign("b", "user-2")
        manager.track("a", "user-1", "revenue", 5.0)

        manager.clear("a")

        sticky = manager.assignments.get_strategy("sticky")
        assert sticky.cached("user-1") is None
        assert sticky.cached("user-2") is not None
        series = manager.metrics.get_counter("assignments_total").collect()
        assert {labels["experiment_id"] for labels, _ in series} == {"b"}
        assert manager.metrics.get_counter("events_tracked_total").collect() == []

    def test_clear_unknown_is_ignored(self, manager):
        manager.clear("missing")

    def test_recreated_experiment_starts_fresh(self, manager, experiment, experiment_config):
        manager.assign("exp_checkout", "user-1")
        manager.clear("exp_checkout")
        manager.create_experiment(experiment_config())

        assert manager.get_results("exp_checkout").sample_size.total == 0
        assert manager.get_assignment("exp_checkout", "user-1") is None


# ============================================================================
# 割り当て
# ============================================================================


class TestAssign:
    """assign のテスト"""

    def test_unknown_experiment(self, manager):
        assert manager.assign("missing", "user-1") is None

        skipped = manager.metrics.get_counter("assignments_skipped_total")
        assert skipped.get({"reason": "unknown"}) == 1.0

    @pytest.mark.parametrize("status", ["draft", "paused", "completed", "cancelled"])
    def test_inactive_experiment(self, manager, experiment_config, status):
        manager.create_experiment(experiment_config(status=status))

        assert manager.assign("exp_checkout", "user-1") is None
        assert manager.get_assignment("exp_checkout", "user-1") is None
        skipped = manager.metrics.get_counter("assignments_skipped_total")
        assert skipped.get({"reason": "inactive"}) == 1.0

    def test_assignment_is_stable(self, manager, experiment):
        first = manager.assign("exp_checkout", "user-1")

        for _ in range(10):
            assert manager.assign("exp_checkout", "user-1") == first

        assert first in ("control", "variant")

    def test_counters_only_count_new_participants(self, manager, experiment):
        variation_id = manager.assign("exp_checkout", "user-1")
        manager.assign("exp_checkout", "user-1")
        manager.assign("exp_checkout", "user-2")

        results = manager.get_results("exp_checkout")
        assert results.sample_size.total == 2
        assert sum(results.sample_size.by_variation.values()) == 2
        assert results.variations[variation_id].sample_size >= 1

        counter = manager.metrics.get_counter("assignments_total")
        assert sum(value for _, value in counter.collect()) == 2.0

    def test_assignment_record(self, manager, experiment, clock):
        variation_id = manager.assign("exp_checkout", "user-1", {"country": "US"})

        assignment = manager.get_assignment("exp_checkout", "user-1")
        assert assignment.variation_id == variation_id
        assert assignment.assigned_at == clock()
        assert assignment.metadata == {"country": "US"}
        assert assignment.events == []

    def test_include_criteria(self, manager, experiment_config):
        manager.create_experiment(experiment_config(include=["country=US"]))

        assert manager.assign("exp_checkout", "user-1", {"country": "JP"}) is None
        assert manager.assign("exp_checkout", "user-2") is None
        assert manager.assign("exp_checkout", "user-3", {"country": "us"}) is not None

        skipped = manager.metrics.get_counter("assignments_skipped_total")
        assert skipped.get({"reason": "criteria"}) == 2.0
        assert manager.get_results("exp_checkout").sample_size.total == 1

    def test_exclude_criteria(self, manager, experiment_config):
        manager.create_experiment(experiment_config(exclude=["beta_tester"]))

        assert manager.assign("exp_checkout", "user-1", {"beta_tester": False}) is None
        assert manager.assign("exp_checkout", "user-2", {"plan": "pro"}) is not None

    def test_hash_allocation_is_deterministic(self, config, clock, timer_factory, experiment_config):
        managers = [
            ExperimentManager(config=config, clock=clock, timer_factory=timer_factory)
            for _ in range(2)
        ]
        for m in managers:
            m.create_experiment(experiment_config(method="hash"))

        for i in range(50):
            participant_id = f"user-{i}"
            assert (
                managers[0].assign("exp_checkout", participant_id)
                == managers[1].assign("exp_checkout", participant_id)
            )

    def test_zero_traffic_variation_is_never_chosen(self, manager, experiment_config):
        manager.create_experiment(experiment_config(variations=[
            {"id": "control", "traffic": 100, "is_control": True},
            {"id": "variant", "traffic": 0},
        ]))

        assert {manager.assign("exp_checkout", f"user-{i}") for i in range(100)} == {"control"}


class TestVariationConfig:
    """get_variation_config のテスト"""

    def test_returns_assigned_config(self, manager, experiment):
        variation_id = manager.assign("exp_checkout", "user-1")
        expected = "blue" if variation_id == "control" else "green"

        assert manager.get_variation_config("exp_checkout", "user-1") == {"button_color": expected}

    def test_returns_copy(self, manager, experiment):
        manager.assign("exp_checkout", "user-1")
        manager.get_variation_config("exp_checkout", "user-1")["button_color"] = "red"

        assert manager.get_variation_config("exp_checkout", "user-1")["button_color"] != "red"

    def test_unassigned(self, manager, experiment):
        assert manager.get_variation_config("exp_checkout", "user-1") is None
        assert manager.get_variation_config("missing", "user-1") is None


# ============================================================================
# 記録
# ============================================================================


class TestTrack:
    """track / on_event のテスト"""

    def test_records_event(self, manager, experiment, clock):
        variation_id = manager.assign("exp_checkout", "user-1")

        manager.track("exp_checkout", "user-1", "revenue", 42.0, {"source": "web"})

        [event] = manager.ledger.events_for("exp_checkout")
        assert event.variation_id == variation_id
        assert event.participant_id == "user-1"
        assert event.value == 42.0
        assert event.timestamp == clock()
        assert event.metadata == {"source": "web"}
        assert manager.get_assignment("exp_checkout", "user-1").events == [event]

        tracked = manager.metrics.get_counter("events_tracked_total")
        assert tracked.get({"experiment_id": "exp_checkout"}) == 1.0
        assert manager.metrics.get_gauge("ledger_events").get() == 1.0

    def test_unassigned_participant_is_ignored(self, manager, experiment, timer_factory):
        manager.track("exp_checkout", "user-1", "revenue", 42.0)

        assert len(manager.ledger) == 0
        assert timer_factory.timers == []

    def test_unknown_experiment_is_ignored(self, manager):
        manager.track("missing", "user-1", "revenue", 42.0)
        assert len(manager.ledger) == 0

    def test_inactive_experiment_is_ignored(self, manager, experiment):
        manager.assign("exp_checkout", "user-1")
        manager.set_status("exp_checkout", "paused")

        manager.track("exp_checkout", "user-1", "revenue", 42.0)

        assert len(manager.ledger) == 0

    def test_handlers_receive_events(self, manager, experiment):
        received = []
        manager.on_event(received.append)
        manager.assign("exp_checkout", "user-1")

        manager.track("exp_checkout", "user-1", "revenue", 1.0)
        manager.track("exp_checkout", "user-1", "revenue", 2.0)

        assert [e.value for e in received] == [1.0, 2.0]

    def test_failing_handler_does_not_stop_others(self, manager, experiment, caplog):
        received = []

        def failing(event):
            raise RuntimeError("handler failed")

        manager.on_event(failing)
        manager.on_event(received.append)
        manager.assign("exp_checkout", "user-1")

        with caplog.at_level(logging.ERROR, logger="src.ab_testing.experiment_manager"):
            manager.track("exp_checkout", "user-1", "revenue", 1.0)

        assert len(received) == 1
        assert len(manager.ledger) == 1
        assert "handler failed" in caplog.text
        assert manager.metrics.get_counter("event_handler_errors_total").get() == 1.0

    def test_buffer_is_bounded(self, clock, timer_factory, experiment_config):
        manager = ExperimentManager(
            config=ExperimentEngineConfig(max_event_buffer=5),
            clock=clock,
            timer_factory=timer_factory,
        )
        manager.create_experiment(experiment_config())
        manager.assign("exp_checkout", "user-1")

        for value in range(8):
            manager.track("exp_checkout", "user-1", "revenue", float(value))

        assert [e.value for e in manager.ledger.events_for("exp_checkout")] == [3.0, 4.0, 5.0, 6.0, 7.0]


class TestDebouncedAnalysis:
    """記録後のデバウンス分析"""

    def test_burst_schedules_single_analysis(self, manager, experiment, timer_factory):
        manager.assign("exp_checkout", "user-1")

        for value in range(5):
            manager.track("exp_checkout", "user-1", "revenue", float(value))

        assert len(timer_factory.live) == 1
        assert timer_factory.live[0].interval == 10.0

    def test_timer_runs_analysis(self, manager, experiment, timer_factory, clock):
        populate(manager)
        clock.advance(seconds=10)

        timer_factory.fire_all()

        results = manager.get_results("exp_checkout")
        assert results.analyzed_at == clock()
        assert results.tests != []
        analyses = manager.metrics.get_counter("analyses_total")
        assert analyses.get({"trigger": "debounce"}) == 1.0

    def test_cleared_before_timer_fires(self, manager, experiment, timer_factory):
        manager.assign("exp_checkout", "user-1")
        manager.track("exp_checkout", "user-1", "revenue", 1.0)
        timer = timer_factory.timers[0]

        manager.clear("exp_checkout")
        timer.function(*timer.args)

        assert manager.get_results("exp_checkout") is None


# ============================================================================
# 分析・推奨事項・レポート
# ============================================================================


class TestAnalyze:
    """analyze / analyze_async のテスト"""

    def test_significant_numeric_scenario(self, manager, experiment):
        groups = populate(manager)

        results = manager.analyze("exp_checkout")

        assert set(groups) == {"control", "variant"}
        assert results.sample_size.total == 40
        assert results.sample_size.by_variation == {
            "control": len(groups["control"]),
            "variant": len(groups["variant"]),
        }
        test = results.get_test("variant", "revenue")
        assert test.is_significant
        assert results.overall_significance is True
        assert results.winner.variation_id == "variant"
        assert manager.get_results("exp_checkout") is results

    def test_analyze_unknown(self, manager):
        assert manager.analyze("missing") is None

    def test_analysis_is_recorded_in_metrics(self, manager, experiment):
        manager.analyze("exp_checkout")

        assert manager.metrics.get_counter("analyses_total").get({"trigger": "manual"}) == 1.0
        assert manager.metrics.get_histogram("analysis_duration_seconds").get_count() == 1

    def test_reanalysis_keeps_counters(self, manager, experiment):
        populate(manager, participants=10)
        manager.analyze("exp_checkout")
        manager.assign("exp_checkout", "late-user")

        results = manager.analyze("exp_checkout")

        assert results.sample_size.total == 11

    @pytest.mark.asyncio
    async def test_analyze_async(self, manager, experiment):
        populate(manager)

        results = await manager.analyze_async("exp_checkout")

        assert results.overall_significance is True
        assert manager.metrics.get_counter("analyses_total").get({"trigger": "async"}) == 1.0

    @pytest.mark.asyncio
    async def test_analyze_async_unknown(self, manager):
        assert await manager.analyze_async("missing") is None


class TestRecommendations:
    """get_recommendations のテスト"""

    def test_uses_stored_results_by_default(self, manager, experiment):
        populate(manager)

        recommendations = manager.get_recommendations("exp_checkout")

        # 未分析なので有意性なし。サンプル数不足による延長と検出力不足
        types = [r.type for r in recommendations]
        assert RecommendationType.STOP not in types

    def test_refresh_reanalyzes(self, manager, experiment):
        populate(manager)

        recommendations = manager.get_recommendations("exp_checkout", refresh=True)

        assert recommendations[0].type == RecommendationType.STOP
        assert recommendations[0].title == "Stop Experiment Early - Significant Results"
        assert recommendations[0].actions[0] == "Deploy winning variation: variant"

    def test_sorted_by_confidence(self, manager, experiment):
        populate(manager)

        recommendations = manager.get_recommendations("exp_checkout", refresh=True)

        confidences = [r.confidence for r in recommendations]
        assert confidences == sorted(confidences, reverse=True)

    def test_unknown_experiment(self, manager):
        assert manager.get_recommendations("missing") == []
        assert manager.get_recommendations("missing", refresh=True) == []

    def test_offset_duration_with_naive_clock(self, manager, experiment_config):
        """タイムゾーン付きの期間でも推奨事項とレポートを生成できる"""
        manager.create_experiment(experiment_config(
            start_time="2023-12-31T00:00:00+00:00",
            end_time="2024-01-14T00:00:00+00:00",
        ))
        populate(manager)

        recommendations = manager.get_recommendations("exp_checkout", refresh=True)
        report = manager.generate_report("exp_checkout")

        assert recommendations[0].type == RecommendationType.STOP
        assert report["sample_size"]["total"] == 40
        assert manager.registry.get("exp_checkout").duration.start_time.tzinfo is None


class TestReport:
    """generate_report / estimate_sample_size のテスト"""

    def test_report_contents(self, manager, experiment, clock):
        populate(manager)
        manager.analyze("exp_checkout")

        report = manager.generate_report("exp_checkout")

        assert report["experiment"]["id"] == "exp_checkout"
        assert report["experiment"]["status"] == "active"
        assert report["sample_size"]["total"] == 40
        assert set(report["variations"]) == {"control", "variant"}
        assert report["tests"][0]["metric_id"] == "revenue"
        assert report["overall_significance"] is True
        assert report["winner"]["variation_id"] == "variant"
        assert report["recommendations"][0]["type"] == "stop"
        assert report["analyzed_at"] == clock().isoformat()
        assert report["generated_at"] == clock().isoformat()

    def test_report_unknown(self, manager):
        assert manager.generate_report("missing") is None

    def test_estimate_sample_size(self, manager):
        assert 680 <= manager.estimate_sample_size(0.10, 0.05) <= 690

    def test_estimate_sample_size_invalid(self, manager):
        with pytest.raises(ValueError):
            manager.estimate_sample_size(0.0, 0.05)


# ============================================================================
# 保持期間スイープ・スケジューラー
# ============================================================================


class TestRetentionSweep:
    """run_retention_sweep のテスト"""

    def test_recent_data_is_kept(self, manager, experiment):
        manager.assign("exp_checkout", "user-1")
        manager.track("exp_checkout", "user-1", "revenue", 1.0)

        assert manager.run_retention_sweep() == {"events": 0, "assignments": 0}
        assert len(manager.ledger) == 1

    def test_old_data_is_removed(self, manager, experiment, clock):
        manager.assign("exp_checkout", "user-1")
        manager.track("exp_checkout", "user-1", "revenue", 1.0)
        clock.advance(days=31)
        manager.assign("exp_checkout", "user-2")

        removed = manager.run_retention_sweep()

        assert removed == {"events": 1, "assignments": 1}
        assert manager.get_assignment("exp_checkout", "user-1") is None
        assert manager.get_assignment("exp_checkout", "user-2") is not None
        purged = manager.metrics.get_counter("retention_purged_total")
        assert purged.get({"kind": "events"}) == 1.0

    def test_swept_participant_keeps_variation(self, manager, experiment, clock):
        variation_id = manager.assign("exp_checkout", "user-1")
        clock.advance(days=31)
        manager.run_retention_sweep()

        assert manager.assign("exp_checkout", "user-1") == variation_id

        assignment = manager.get_assignment("exp_checkout", "user-1")
        assert assignment.assigned_at == clock()
        assert manager.get_results("exp_checkout").sample_size.total == 1

    def test_finished_experiment_is_forgotten(self, manager, experiment):
        manager.assign("exp_checkout", "user-1")
        manager.set_status("exp_checkout", "completed")

        removed = manager.run_retention_sweep()

        assert removed["assignments"] == 1
        manager.set_status("exp_checkout", "active")
        manager.assign("exp_checkout", "user-1")
        assert manager.get_results("exp_checkout").sample_size.total == 2

    def test_sweep_with_explicit_time(self, manager, experiment, clock):
        manager.assign("exp_checkout", "user-1")
        manager.track("exp_checkout", "user-1", "revenue", 1.0)

        removed = manager.run_retention_sweep(now=clock() + timedelta(days=31))

        assert removed == {"events": 1, "assignments": 1}


class TestSchedulerLifecycle:
    """start_scheduler / shutdown のテスト"""

    def test_periodic_sweep(self, manager, experiment, timer_factory, clock):
        manager.assign("exp_checkout", "user-1")
        manager.start_scheduler()
        clock.advance(days=31)

        sweep_timer = timer_factory.live[0]
        assert sweep_timer.interval == 86400
        sweep_timer.fire()

        assert manager.get_assignment("exp_checkout", "user-1") is None
        assert len(timer_factory.live) == 1
        manager.shutdown()

    def test_shutdown_with_flush(self, manager, experiment, timer_factory):
        populate(manager)
        manager.start_scheduler()

        manager.shutdown(flush=True)

        assert manager.get_results("exp_checkout").overall_significance is True
        assert timer_factory.live == []
        assert not manager.scheduler.is_running

    def test_shutdown_without_flush_drops_pending(self, manager, experiment, timer_factory):
        populate(manager, participants=4)

        manager.shutdown()

        assert manager.get_results("exp_checkout").analyzed_at is not None
        assert manager.get_results("exp_checkout").tests == []
        assert timer_factory.live == []


class TestConstruction:
    """コンストラクタのテスト"""

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            ExperimentManager(config=ExperimentEngineConfig(retention_days=0))

    def test_instances_are_isolated(self, clock, timer_factory, experiment_config):
        first = ExperimentManager(clock=clock, timer_factory=timer_factory)
        second = ExperimentManager(clock=clock, timer_factory=timer_factory)
        first.create_experiment(experiment_config())

        assert second.get_experiment("exp_checkout") is None
        assert first.metrics is not second.metrics
