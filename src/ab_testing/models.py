# 実験エンジンのデータモデル
"""
実験・バリエーション・参加者・イベント・分析結果・推奨事項のデータクラス

設計方針:
- 設定系（Experiment, Variation, MetricDefinition）は作成時に検証される
- 結果系（ExperimentResults 以下）は分析のたびに再計算される派生データ
- Recommendation は保存せず、要求のたびに生成する
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from src.ab_testing.criteria import AllocationCriteria


class ExperimentStatus(str, Enum):
    """実験のステータス（active のときのみ割り当て・記録を受け付ける）"""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AllocationMethod(str, Enum):
    """トラフィック割り当て方式"""
    RANDOM = "random"
    HASH = "hash"
    STICKY = "sticky"


class MetricType(str, Enum):
    """メトリクスの種類

    CONVERSION は z検定、それ以外は t検定で分析する。
    """
    NUMERIC = "numeric"
    CONVERSION = "conversion"
    TIME = "time"
    COUNT = "count"


class OptimizationGoal(str, Enum):
    MAXIMIZE = "maximize"
    MINIMIZE = "minimize"


class MetricPriority(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class TestType(str, Enum):
    """検定の種類"""
    __test__ = False  # pytest の収集対象外

    T_TEST = "ttest"
    Z_TEST = "ztest"


class RecommendationType(str, Enum):
    STOP = "stop"
    EXTEND = "extend"
    MODIFY = "modify"


class RiskImpact(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def _parse_datetime(value: Union[str, datetime]) -> datetime:
    """datetime または ISO-8601 文字列を datetime に変換

    タイムゾーン付きの値はローカル時刻の naive datetime に揃える
    （エンジンの時計は naive なので差分計算で型が混在しないようにする）。
    """
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


# ============================================================================
# 実験設定
# ============================================================================


@dataclass
class Variation:
    """実験の1つの群（コントロールを含む）

    Attributes:
        id: バリエーションID
        name: 表示名
        traffic: トラフィック配分（0-100 のパーセンテージ）
        is_control: コントロール群か（実験ごとにちょうど1つ）
        config: 呼び出し側に返す設定ペイロード（エンジンは解釈しない）
    """
    id: str
    name: str
    traffic: float
    is_control: bool = False
    config: Dict[str, Any] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Variation:
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            traffic=float(data["traffic"]),
            is_control=bool(data.get("is_control", False)),
            config=dict(data.get("config") or {}),
            description=data.get("description", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "traffic": self.traffic,
            "is_control": self.is_control,
            "config": self.config,
            "description": self.description,
        }


@dataclass
class MetricDefinition:
    """計測するメトリクスの定義"""
    id: str
    type: MetricType = MetricType.NUMERIC
    goal: OptimizationGoal = OptimizationGoal.MAXIMIZE
    priority: MetricPriority = MetricPriority.PRIMARY
    name: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        self.type = MetricType(self.type)
        self.goal = OptimizationGoal(self.goal)
        self.priority = MetricPriority(self.priority)

    @property
    def is_conversion(self) -> bool:
        return self.type == MetricType.CONVERSION

    @property
    def is_primary(self) -> bool:
        return self.priority == MetricPriority.PRIMARY

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MetricDefinition:
        return cls(
            id=data["id"],
            type=data.get("type", MetricType.NUMERIC),
            goal=data.get("goal", OptimizationGoal.MAXIMIZE),
            priority=data.get("priority", MetricPriority.PRIMARY),
            name=data.get("name", ""),
            description=data.get("description", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "goal": self.goal.value,
            "priority": self.priority.value,
            "name": self.name,
            "description": self.description,
        }


@dataclass
class Allocation:
    """割り当て方式と参加条件"""
    method: AllocationMethod = AllocationMethod.RANDOM
    criteria: AllocationCriteria = field(default_factory=AllocationCriteria)

    def __post_init__(self) -> None:
        self.method = AllocationMethod(self.method)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Allocation:
        data = data or {}
        criteria = data.get("criteria") or {}
        return cls(
            method=data.get("method", AllocationMethod.RANDOM),
            criteria=AllocationCriteria.parse(
                include=criteria.get("include"),
                exclude=criteria.get("exclude"),
            ),
        )


@dataclass
class DurationWindow:
    """実験期間と目標サンプル数"""
    start_time: datetime
    end_time: datetime
    min_sample_size: int

    @property
    def total_days(self) -> float:
        return (self.end_time - self.start_time) / timedelta(days=1)


@dataclass
class TargetStatistics:
    """実験の統計目標"""
    confidence_level: float = 0.95
    minimum_detectable_effect: float = 0.05
    power: float = 0.8


@dataclass
class Experiment:
    """実験の設定

    作成は ExperimentRegistry.create 経由で行い、以降はステータス遷移のみで変更される。
    """
    id: str
    name: str
    variations: List[Variation]
    duration: DurationWindow
    metrics: List[MetricDefinition] = field(default_factory=list)
    allocation: Allocation = field(default_factory=Allocation)
    statistics: TargetStatistics = field(default_factory=TargetStatistics)
    status: ExperimentStatus = ExperimentStatus.DRAFT
    description: str = ""

    def __post_init__(self) -> None:
        self.status = ExperimentStatus(self.status)

    @property
    def control(self) -> Optional[Variation]:
        for variation in self.variations:
            if variation.is_control:
                return variation
        return None

    @property
    def is_active(self) -> bool:
        return self.status == ExperimentStatus.ACTIVE

    def get_variation(self, variation_id: str) -> Optional[Variation]:
        for variation in self.variations:
            if variation.id == variation_id:
                return variation
        return None

    def get_metric(self, metric_id: str) -> Optional[MetricDefinition]:
        for metric in self.metrics:
            if metric.id == metric_id:
                return metric
        return None

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        now: Optional[datetime] = None,
        default_duration_days: int = 14,
        default_min_sample_size: int = 100,
    ) -> Experiment:
        """辞書から実験設定を構築

        duration / statistics / allocation は省略可能（デフォルト値で補完）。

        Raises:
            KeyError, TypeError, ValueError: 必須項目の欠落・型不正
        """
        now = now or datetime.now()
        duration = data.get("duration") or {}
        start_time = _parse_datetime(duration.get("start_time", now))
        end_time = _parse_datetime(
            duration.get("end_time", start_time + timedelta(days=default_duration_days))
        )
        stats = data.get("statistics") or {}

        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            variations=[Variation.from_dict(v) for v in data["variations"]],
            metrics=[MetricDefinition.from_dict(m) for m in data.get("metrics") or []],
            allocation=Allocation.from_dict(data.get("allocation")),
            duration=DurationWindow(
                start_time=start_time,
                end_time=end_time,
                min_sample_size=int(
                    duration.get("min_sample_size", default_min_sample_size)
                ),
            ),
            statistics=TargetStatistics(
                confidence_level=float(stats.get("confidence_level", 0.95)),
                minimum_detectable_effect=float(
                    stats.get("minimum_detectable_effect", 0.05)
                ),
                power=float(stats.get("power", 0.8)),
            ),
            status=data.get("status", ExperimentStatus.DRAFT),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "variations": [v.to_dict() for v in self.variations],
            "metrics": [m.to_dict() for m in self.metrics],
            "allocation": {
                "method": self.allocation.method.value,
                "criteria": self.allocation.criteria.to_dict(),
            },
            "duration": {
                "start_time": self.duration.start_time.isoformat(),
                "end_time": self.duration.end_time.isoformat(),
                "min_sample_size": self.duration.min_sample_size,
            },
            "statistics": {
                "confidence_level": self.statistics.confidence_level,
                "minimum_detectable_effect": self.statistics.minimum_detectable_effect,
                "power": self.statistics.power,
            },
        }


# ============================================================================
# 参加者・イベント
# ============================================================================


@dataclass
class MetricEvent:
    """メトリクスの観測イベント（追記のみ）"""
    id: str
    experiment_id: str
    participant_id: str
    variation_id: str
    metric_id: str
    value: Union[float, bool]
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def numeric_value(self) -> float:
        """bool は 1.0 / 0.0 として扱う"""
        if isinstance(self.value, bool):
            return 1.0 if self.value else 0.0
        return float(self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "experiment_id": self.experiment_id,
            "participant_id": self.participant_id,
            "variation_id": self.variation_id,
            "metric_id": self.metric_id,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class ParticipantAssignment:
    """参加者の割り当て記録（実験×参加者で一意）"""
    experiment_id: str
    participant_id: str
    variation_id: str
    assigned_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    events: List[MetricEvent] = field(default_factory=list)


# ============================================================================
# 分析結果
# ============================================================================


@dataclass
class MetricSummary:
    """バリエーション×メトリクスの集計値"""
    mean: float
    variance: float
    standard_error: float
    confidence_interval: Tuple[float, float]
    sample_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mean": self.mean,
            "variance": self.variance,
            "standard_error": self.standard_error,
            "confidence_interval": list(self.confidence_interval),
            "sample_count": self.sample_count,
        }


@dataclass
class ConversionSummary:
    """コンバージョン系メトリクスの集計値"""
    conversions: int
    conversion_rate: float
    confidence_interval: Tuple[float, float]
    sample_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "confidence_interval": list(self.confidence_interval),
            "sample_count": self.sample_count,
        }


@dataclass
class VariationResult:
    """バリエーション単位の結果"""
    variation_id: str
    sample_size: int = 0
    metrics: Dict[str, MetricSummary] = field(default_factory=dict)
    conversions: Dict[str, ConversionSummary] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variation_id": self.variation_id,
            "sample_size": self.sample_size,
            "metrics": {k: v.to_dict() for k, v in self.metrics.items()},
            "conversions": {k: v.to_dict() for k, v in self.conversions.items()},
        }


@dataclass
class SignificanceTestResult:
    """コントロール対バリエーションの検定結果（メトリクスごと）"""
    variation_id: str
    metric_id: str
    test_type: TestType
    statistic: float
    p_value: float
    effect_size: float
    confidence_interval: Tuple[float, float]
    is_significant: bool = False
    adjusted_p_value: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variation_id": self.variation_id,
            "metric_id": self.metric_id,
            "test_type": self.test_type.value,
            "statistic": self.statistic,
            "p_value": self.p_value,
            "adjusted_p_value": self.adjusted_p_value,
            "is_significant": self.is_significant,
            "effect_size": self.effect_size,
            "confidence_interval": list(self.confidence_interval),
        }


@dataclass
class PowerAnalysis:
    """検出力（目標サンプル数に対する到達率で近似）"""
    observed_power: float = 0.0
    required_sample_size: int = 0
    actual_sample_size: int = 0


@dataclass
class SampleSizeInfo:
    total: int = 0
    by_variation: Dict[str, int] = field(default_factory=dict)
    is_sufficient: bool = False


@dataclass
class Winner:
    variation_id: str
    confidence: float
    lift: float


@dataclass
class ExperimentResults:
    """実験全体の分析結果"""
    experiment_id: str
    variations: Dict[str, VariationResult]
    sample_size: SampleSizeInfo
    power: PowerAnalysis
    tests: List[SignificanceTestResult] = field(default_factory=list)
    overall_significance: bool = False
    correction_method: str = "benjamini-hochberg"
    winner: Optional[Winner] = None
    analyzed_at: Optional[datetime] = None

    @classmethod
    def empty(cls, experiment: Experiment, now: Optional[datetime] = None) -> ExperimentResults:
        """全バリエーションをゼロで初期化した結果"""
        return cls(
            experiment_id=experiment.id,
            variations={v.id: VariationResult(variation_id=v.id) for v in experiment.variations},
            sample_size=SampleSizeInfo(
                by_variation={v.id: 0 for v in experiment.variations},
            ),
            power=PowerAnalysis(required_sample_size=experiment.duration.min_sample_size),
            analyzed_at=now,
        )

    def get_test(self, variation_id: str, metric_id: str) -> Optional[SignificanceTestResult]:
        for test in self.tests:
            if test.variation_id == variation_id and test.metric_id == metric_id:
                return test
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "variations": {k: v.to_dict() for k, v in self.variations.items()},
            "tests": [t.to_dict() for t in self.tests],
            "overall_significance": self.overall_significance,
            "correction_method": self.correction_method,
            "power": {
                "observed_power": self.power.observed_power,
                "required_sample_size": self.power.required_sample_size,
                "actual_sample_size": self.power.actual_sample_size,
            },
            "sample_size": {
                "total": self.sample_size.total,
                "by_variation": dict(self.sample_size.by_variation),
                "is_sufficient": self.sample_size.is_sufficient,
            },
            "winner": (
                {
                    "variation_id": self.winner.variation_id,
                    "confidence": self.winner.confidence,
                    "lift": self.winner.lift,
                }
                if self.winner
                else None
            ),
            "analyzed_at": self.analyzed_at.isoformat() if self.analyzed_at else None,
        }


# ============================================================================
# 推奨事項
# ============================================================================


@dataclass
class Risk:
    description: str
    probability: float
    impact: RiskImpact


@dataclass
class Recommendation:
    """実験に対する推奨アクション（派生データ、保存しない）"""
    type: RecommendationType
    title: str
    explanation: str
    confidence: float
    actions: List[str] = field(default_factory=list)
    risks: List[Risk] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "title": self.title,
            "explanation": self.explanation,
            "confidence": self.confidence,
            "actions": list(self.actions),
            "risks": [
                {
                    "description": r.description,
                    "probability": r.probability,
                    "impact": r.impact.value,
                }
                for r in self.risks
            ],
        }
