# 推奨事項の生成
"""
RecommendationEngine: 分析結果から推奨アクションを導出する

ルール（該当するものを全て出力し、信頼度の降順に並べる）:
1. 全体で有意かつ勝者あり → stop（勝者をデプロイ）
2. サンプル数不足かつ現在のペースでは期間内に届かない → extend
3. 検出力が目標未満 → modify
4. active のまま終了予定時刻を過ぎた → stop（勝者デプロイ / 明確な勝者なし）

推奨事項は保存しない。呼び出しのたびに再計算する。
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from src.ab_testing.models import (
    Experiment,
    ExperimentResults,
    Recommendation,
    RecommendationType,
    Risk,
    RiskImpact,
)


logger = logging.getLogger(__name__)

EXTEND_CONFIDENCE = 0.8
MODIFY_CONFIDENCE = 0.9
NO_WINNER_CONFIDENCE = 0.7
UNKNOWN_WINNER_CONFIDENCE = 0.5


def projected_days_to_target(
    experiment: Experiment,
    total_sample_size: int,
    now: datetime,
) -> float:
    """開始からのサンプリングペースを線形に延長し、目標到達までの日数を見積もる

    割り当てが無い場合は無限大。経過時間 0 以下で割り当てがある場合は
    ペースが無限大とみなして 0。
    """
    remaining = experiment.duration.min_sample_size - total_sample_size
    if remaining <= 0:
        return 0.0
    if total_sample_size <= 0:
        return math.inf

    elapsed_days = (now - experiment.duration.start_time) / timedelta(days=1)
    if elapsed_days <= 0:
        return 0.0

    rate = total_sample_size / elapsed_days
    return remaining / rate


class RecommendationEngine:
    """推奨事項の生成"""

    def recommend(
        self,
        experiment: Experiment,
        results: ExperimentResults,
        now: Optional[datetime] = None,
    ) -> List[Recommendation]:
        """推奨事項を生成

        Args:
            experiment: 対象の実験
            results: 最新の分析結果
            now: 判定時刻

        Returns:
            信頼度の降順に並べた推奨事項
        """
        now = now or datetime.now()
        recommendations: List[Recommendation] = []

        early_stop = self._early_stop(results)
        if early_stop:
            recommendations.append(early_stop)

        extend = self._extend(experiment, results, now)
        if extend:
            recommendations.append(extend)

        modify = self._modify(experiment, results)
        if modify:
            recommendations.append(modify)

        ended = self._ended(experiment, results, now)
        if ended:
            recommendations.append(ended)

        # 同じ信頼度は生成順を保つ
        recommendations.sort(key=lambda r: r.confidence, reverse=True)

        logger.debug(
            f"推奨事項を生成: experiment_id={experiment.id}, "
            f"types={[r.type.value for r in recommendations]}"
        )
        return recommendations

    # ===== Private Methods =====

    def _early_stop(self, results: ExperimentResults) -> Optional[Recommendation]:
        winner = results.winner
        if not results.overall_significance or winner is None:
            return None

        return Recommendation(
            type=RecommendationType.STOP,
            title="Stop Experiment Early - Significant Results",
            explanation=(
                f"Experiment has reached statistical significance with "
                f"{winner.confidence * 100:.1f}% confidence. The winning variation "
                f"({winner.variation_id}) shows a {winner.lift * 100:.1f}% improvement."
            ),
            confidence=winner.confidence,
            actions=[
                f"Deploy winning variation: {winner.variation_id}",
                "Document experiment results",
                "Plan rollout strategy",
            ],
            risks=[
                Risk("Early stopping may miss long-term effects", 0.2, RiskImpact.MEDIUM),
            ],
        )

    def _extend(
        self,
        experiment: Experiment,
        results: ExperimentResults,
        now: datetime,
    ) -> Optional[Recommendation]:
        total = results.sample_size.total
        target = experiment.duration.min_sample_size
        if total >= target:
            return None

        remaining_days = (experiment.duration.end_time - now) / timedelta(days=1)
        projected_days = projected_days_to_target(experiment, total, now)
        if projected_days <= remaining_days:
            return None

        estimate = "an unknown number of" if math.isinf(projected_days) else f"{projected_days:.1f}"
        return Recommendation(
            type=RecommendationType.EXTEND,
            title="Extend Experiment Duration",
            explanation=(
                f"Current sample size ({total}) is below minimum required ({target}). "
                f"Estimated {estimate} more days needed."
            ),
            confidence=EXTEND_CONFIDENCE,
            actions=[
                "Extend experiment end date",
                "Consider increasing traffic allocation",
                "Review targeting criteria to increase participant pool",
            ],
            risks=[
                Risk(
                    "Longer experiments may be affected by external factors",
                    0.3,
                    RiskImpact.MEDIUM,
                ),
            ],
        )

    def _modify(
        self,
        experiment: Experiment,
        results: ExperimentResults,
    ) -> Optional[Recommendation]:
        observed = results.power.observed_power
        target = experiment.statistics.power
        if observed >= target:
            return None

        return Recommendation(
            type=RecommendationType.MODIFY,
            title="Insufficient Statistical Power",
            explanation=(
                f"Observed power ({observed * 100:.1f}%) is below target "
                f"({target * 100:.1f}%). Consider modifications to increase effect detection."
            ),
            confidence=MODIFY_CONFIDENCE,
            actions=[
                "Increase sample size allocation",
                "Review minimum detectable effect size",
                "Consider more sensitive metrics",
            ],
            risks=[
                Risk("Changes during experiment may introduce bias", 0.4, RiskImpact.HIGH),
            ],
        )

    def _ended(
        self,
        experiment: Experiment,
        results: ExperimentResults,
        now: datetime,
    ) -> Optional[Recommendation]:
        if not experiment.is_active or now <= experiment.duration.end_time:
            return None

        if results.overall_significance:
            return Recommendation(
                type=RecommendationType.STOP,
                title="Experiment Complete - Deploy Winner",
                explanation="Experiment has reached its scheduled end with significant results.",
                confidence=(
                    results.winner.confidence if results.winner else UNKNOWN_WINNER_CONFIDENCE
                ),
                actions=[
                    "Stop experiment",
                    "Deploy winning variation",
                    "Analyze learnings",
                ],
            )

        return Recommendation(
            type=RecommendationType.STOP,
            title="Experiment Complete - No Clear Winner",
            explanation=(
                "Experiment has ended without statistically significant results. "
                "Consider maintaining control or running follow-up experiments."
            ),
            confidence=NO_WINNER_CONFIDENCE,
            actions=[
                "Stop experiment",
                "Maintain control variation",
                "Plan follow-up experiments with larger effect sizes",
            ],
            risks=[
                Risk("May miss small but meaningful improvements", 0.3, RiskImpact.LOW),
            ],
        )
