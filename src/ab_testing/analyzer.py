# 統計分析
"""
StatisticalAnalyzer: イベントから ExperimentResults を計算する

処理フロー:
    バリエーション×メトリクスの集計
        ↓
    コントロール対各バリエーションの検定（t検定 / z検定）
        ↓
    Benjamini-Hochberg 補正 → 有意判定
        ↓
    勝者の決定・検出力
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from src.ab_testing.models import (
    Experiment,
    ExperimentResults,
    MetricEvent,
    OptimizationGoal,
    PowerAnalysis,
    SampleSizeInfo,
    SignificanceTestResult,
    TestType,
    VariationResult,
    Winner,
)
from src.ab_testing.statistics import (
    benjamini_hochberg,
    summarize,
    summarize_conversions,
    t_test,
    z_test,
)
from src.config.experiment_config import ExperimentEngineConfig


logger = logging.getLogger(__name__)


class StatisticalAnalyzer:
    """実験の統計分析

    状態を持たない。入力（実験・イベント・サンプル数）から毎回結果を再計算する。
    """

    def __init__(self, config: Optional[ExperimentEngineConfig] = None):
        self.config = config or ExperimentEngineConfig()

    def analyze(
        self,
        experiment: Experiment,
        events: Iterable[MetricEvent],
        sample_sizes: Optional[Mapping[str, int]] = None,
        now: Optional[datetime] = None,
    ) -> ExperimentResults:
        """実験を分析

        Args:
            experiment: 対象の実験
            events: 実験のイベント
            sample_sizes: バリエーション別の割り当て数
            now: 分析時刻

        Returns:
            ExperimentResults
        """
        sample_sizes = dict(sample_sizes or {})
        values = self._group_values(experiment, events)

        variations: Dict[str, VariationResult] = {}
        for variation in experiment.variations:
            result = VariationResult(
                variation_id=variation.id,
                sample_size=sample_sizes.get(variation.id, 0),
            )
            for metric in experiment.metrics:
                observed = values[variation.id][metric.id]
                if not observed:
                    continue
                result.metrics[metric.id] = summarize(observed, self.config.critical_value)
                if metric.is_conversion:
                    result.conversions[metric.id] = summarize_conversions(
                        observed, self.config.critical_value
                    )
            variations[variation.id] = result

        tests = self._run_tests(experiment, variations)
        self._apply_correction(tests)

        total = sum(sample_sizes.get(v.id, 0) for v in experiment.variations)
        required = experiment.duration.min_sample_size

        results = ExperimentResults(
            experiment_id=experiment.id,
            variations=variations,
            sample_size=SampleSizeInfo(
                total=total,
                by_variation={v.id: sample_sizes.get(v.id, 0) for v in experiment.variations},
                is_sufficient=total >= required,
            ),
            power=PowerAnalysis(
                observed_power=min(1.0, total / required) if required > 0 else 1.0,
                required_sample_size=required,
                actual_sample_size=total,
            ),
            tests=tests,
            overall_significance=any(t.is_significant for t in tests),
            analyzed_at=now or datetime.now(),
        )
        results.winner = self._determine_winner(experiment, tests)

        logger.debug(
            f"分析完了: experiment_id={experiment.id}, tests={len(tests)}, "
            f"significant={results.overall_significance}, "
            f"winner={results.winner.variation_id if results.winner else None}"
        )
        return results

    # ===== Private Methods =====

    def _group_values(
        self,
        experiment: Experiment,
        events: Iterable[MetricEvent],
    ) -> Dict[str, Dict[str, List[float]]]:
        """バリエーション → メトリクス → 観測値"""
        grouped: Dict[str, Dict[str, List[float]]] = {
            v.id: {m.id: [] for m in experiment.metrics} for v in experiment.variations
        }
        for event in events:
            if event.experiment_id != experiment.id:
                continue
            by_metric = grouped.get(event.variation_id)
            if by_metric is None or event.metric_id not in by_metric:
                continue
            by_metric[event.metric_id].append(event.numeric_value)
        return grouped

    def _run_tests(
        self,
        experiment: Experiment,
        variations: Mapping[str, VariationResult],
    ) -> List[SignificanceTestResult]:
        control = experiment.control
        if control is None:
            return []
        control_result = variations[control.id]

        tests: List[SignificanceTestResult] = []
        for variation in experiment.variations:
            if variation.is_control:
                continue
            treatment_result = variations[variation.id]

            for metric in experiment.metrics:
                if metric.id not in control_result.metrics or metric.id not in treatment_result.metrics:
                    continue

                if metric.is_conversion:
                    outcome = z_test(
                        control_result.conversions[metric.id],
                        treatment_result.conversions[metric.id],
                        self.config.critical_value,
                    )
                    test_type = TestType.Z_TEST
                else:
                    outcome = t_test(
                        control_result.metrics[metric.id],
                        treatment_result.metrics[metric.id],
                        critical_value=self.config.critical_value,
                        exact=self.config.exact_t_distribution,
                        df_threshold=self.config.large_sample_df_threshold,
                    )
                    test_type = TestType.T_TEST

                tests.append(
                    SignificanceTestResult(
                        variation_id=variation.id,
                        metric_id=metric.id,
                        test_type=test_type,
                        statistic=outcome.statistic,
                        p_value=outcome.p_value,
                        effect_size=outcome.effect_size,
                        confidence_interval=outcome.confidence_interval,
                        is_significant=outcome.p_value < self.config.significance_level,
                    )
                )
        return tests

    def _apply_correction(self, tests: List[SignificanceTestResult]) -> None:
        """補正済みp値で有意判定をやり直す"""
        adjusted = benjamini_hochberg([t.p_value for t in tests])
        for test, adjusted_p in zip(tests, adjusted):
            test.adjusted_p_value = adjusted_p
            test.is_significant = adjusted_p < self.config.significance_level

    def _determine_winner(
        self,
        experiment: Experiment,
        tests: List[SignificanceTestResult],
    ) -> Optional[Winner]:
        """有意な主要メトリクスの平均効果量が最大のバリエーション

        minimize のメトリクスは効果量の符号を反転して比較する。
        """
        best: Optional[Winner] = None

        for variation in experiment.variations:
            if variation.is_control:
                continue

            effects: List[float] = []
            p_values: List[float] = []
            for test in tests:
                if test.variation_id != variation.id or not test.is_significant:
                    continue
                metric = experiment.get_metric(test.metric_id)
                if metric is None or not metric.is_primary:
                    continue
                sign = -1.0 if metric.goal == OptimizationGoal.MINIMIZE else 1.0
                effects.append(sign * test.effect_size)
                p_values.append(test.p_value)

            if not effects:
                continue

            lift = sum(effects) / len(effects)
            if best is None or lift > best.lift:
                confidence = 1.0 - sum(p_values) / len(p_values)
                best = Winner(
                    variation_id=variation.id,
                    confidence=min(self.config.max_winner_confidence, confidence),
                    lift=lift,
                )

        return best
