# A/B Testing Module
"""
A/Bテスト実験エンジン

参加者をバリエーションに割り当て、メトリクスを記録し、
統計的有意性の判定と推奨事項の生成を行う。

設計方針:
- 作成時に検証済みの実験設定のみを保持
- random / hash / sticky の割り当て方式（差し替え可能）
- t検定・z検定と Benjamini-Hochberg 補正による分析
"""

from src.ab_testing.analyzer import StatisticalAnalyzer
from src.ab_testing.assignment import (
    AllocationStrategy,
    AssignmentDecision,
    AssignmentEngine,
    HashAllocation,
    RandomAllocation,
    StickyAllocation,
    hash_bucket,
    participant_hash,
)
from src.ab_testing.criteria import (
    AllocationCriteria,
    Criterion,
    EqualityCriterion,
    PresenceCriterion,
    parse_criterion,
)
from src.ab_testing.experiment_manager import ExperimentManager
from src.ab_testing.ledger import MetricLedger
from src.ab_testing.models import (
    AllocationMethod,
    ConversionSummary,
    Experiment,
    ExperimentResults,
    ExperimentStatus,
    MetricDefinition,
    MetricEvent,
    MetricPriority,
    MetricSummary,
    MetricType,
    OptimizationGoal,
    ParticipantAssignment,
    Recommendation,
    RecommendationType,
    Risk,
    RiskImpact,
    SignificanceTestResult,
    TestType,
    Variation,
    VariationResult,
    Winner,
)
from src.ab_testing.recommendation import RecommendationEngine
from src.ab_testing.registry import ExperimentRegistry, ValidationError

__all__ = [
    # ファサード
    "ExperimentManager",
    # 構成要素
    "ExperimentRegistry",
    "AssignmentEngine",
    "MetricLedger",
    "StatisticalAnalyzer",
    "RecommendationEngine",
    "ValidationError",
    # 割り当て方式
    "AllocationStrategy",
    "AssignmentDecision",
    "RandomAllocation",
    "HashAllocation",
    "StickyAllocation",
    "participant_hash",
    "hash_bucket",
    # 参加条件
    "AllocationCriteria",
    "Criterion",
    "EqualityCriterion",
    "PresenceCriterion",
    "parse_criterion",
    # データモデル
    "AllocationMethod",
    "ConversionSummary",
    "Experiment",
    "ExperimentResults",
    "ExperimentStatus",
    "MetricDefinition",
    "MetricEvent",
    "MetricPriority",
    "MetricSummary",
    "MetricType",
    "OptimizationGoal",
    "ParticipantAssignment",
    "Recommendation",
    "RecommendationType",
    "Risk",
    "RiskImpact",
    "SignificanceTestResult",
    "TestType",
    "Variation",
    "VariationResult",
    "Winner",
]
