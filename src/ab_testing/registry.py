# 実験レジストリ
"""
ExperimentRegistry: 実験設定と分析結果の保持

設計方針:
- 作成時に設定を検証し、不正な設定は一切保存しない（ValidationError）
- 作成時に全バリエーション分のゼロ初期化済み結果を用意する
- 変更はステータス遷移のみ。削除は clear による明示的な削除のみ
"""

import logging
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Union

from src.ab_testing.models import Experiment, ExperimentResults, ExperimentStatus


logger = logging.getLogger(__name__)

TRAFFIC_TOLERANCE = 0.01


class ValidationError(ValueError):
    """実験設定が不正な場合のエラー"""
    pass


class ExperimentRegistry:
    """実験設定・分析結果のインメモリレジストリ

    Attributes:
        _experiments: 実験ID → Experiment
        _results: 実験ID → 最新の ExperimentResults
        _lock: 登録・カウンター更新の排他制御
    """

    def __init__(
        self,
        default_duration_days: int = 14,
        default_min_sample_size: int = 100,
    ):
        self.default_duration_days = default_duration_days
        self.default_min_sample_size = default_min_sample_size
        self._experiments: Dict[str, Experiment] = {}
        self._results: Dict[str, ExperimentResults] = {}
        self._lock = Lock()

    def create(
        self,
        config: Union[Experiment, Mapping[str, Any]],
        now: Optional[datetime] = None,
    ) -> Experiment:
        """実験を登録

        Args:
            config: Experiment または辞書形式の設定
            now: 期間省略時の開始時刻

        Returns:
            登録された Experiment

        Raises:
            ValidationError: 設定が不正な場合
        """
        experiment = self._build(config, now)
        validate_experiment(experiment)

        with self._lock:
            if experiment.id in self._experiments:
                logger.warning(f"既存の実験を上書き: experiment_id={experiment.id}")
            self._experiments[experiment.id] = experiment
            self._results[experiment.id] = ExperimentResults.empty(experiment, now)

        logger.info(
            f"実験を登録: experiment_id={experiment.id}, "
            f"variations={len(experiment.variations)}, "
            f"metrics={len(experiment.metrics)}, "
            f"method={experiment.allocation.method.value}, "
            f"status={experiment.status.value}"
        )
        return experiment

    def get(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            return self._experiments.get(experiment_id)

    def list_experiments(self) -> List[Experiment]:
        with self._lock:
            return list(self._experiments.values())

    def list_active(self) -> List[Experiment]:
        with self._lock:
            return [e for e in self._experiments.values() if e.is_active]

    def set_status(
        self,
        experiment_id: str,
        status: Union[ExperimentStatus, str],
    ) -> bool:
        """ステータスを変更（副作用はステータスのみ）

        Returns:
            実験が存在し変更した場合 True
        """
        new_status = ExperimentStatus(status)
        with self._lock:
            experiment = self._experiments.get(experiment_id)
            if experiment is None:
                logger.debug(f"ステータス変更対象なし: experiment_id={experiment_id}")
                return False
            old_status = experiment.status
            experiment.status = new_status

        logger.info(
            f"ステータス変更: experiment_id={experiment_id}, "
            f"{old_status.value} -> {new_status.value}"
        )
        return True

    def remove(self, experiment_id: str) -> bool:
        """実験と結果を削除（参加者・イベントの削除は呼び出し側が行う）"""
        with self._lock:
            existed = self._experiments.pop(experiment_id, None) is not None
            self._results.pop(experiment_id, None)
        return existed

    # === 結果 ===

    def record_assignment(self, experiment_id: str, variation_id: str) -> None:
        """割り当て時のサンプル数カウンターを更新"""
        with self._lock:
            results = self._results.get(experiment_id)
            if results is None:
                return
            results.sample_size.total += 1
            results.sample_size.by_variation[variation_id] = (
                results.sample_size.by_variation.get(variation_id, 0) + 1
            )
            variation_result = results.variations.get(variation_id)
            if variation_result is not None:
                variation_result.sample_size += 1

    def get_results(self, experiment_id: str) -> Optional[ExperimentResults]:
        with self._lock:
            return self._results.get(experiment_id)

    def sample_sizes(self, experiment_id: str) -> Dict[str, int]:
        """バリエーション別サンプル数のスナップショット"""
        with self._lock:
            results = self._results.get(experiment_id)
            if results is None:
                return {}
            return dict(results.sample_size.by_variation)

    def store_results(self, experiment_id: str, results: ExperimentResults) -> bool:
        """分析結果を保存

        分析中に増えた割り当てを失わないよう、保存時点のカウンターを引き継ぐ。
        実験が既に削除されていれば保存しない。
        """
        with self._lock:
            if experiment_id not in self._experiments:
                return False
            current = self._results.get(experiment_id)
            if current is not None:
                results.sample_size.total = current.sample_size.total
                results.sample_size.by_variation = dict(current.sample_size.by_variation)
                for variation_id, variation_result in results.variations.items():
                    variation_result.sample_size = current.sample_size.by_variation.get(
                        variation_id, 0
                    )
            self._results[experiment_id] = results
            return True

    def __contains__(self, experiment_id: str) -> bool:
        with self._lock:
            return experiment_id in self._experiments

    def __len__(self) -> int:
        with self._lock:
            return len(self._experiments)

    # ===== Private Methods =====

    def _build(
        self,
        config: Union[Experiment, Mapping[str, Any]],
        now: Optional[datetime],
    ) -> Experiment:
        """辞書形式の設定を Experiment に変換"""
        if isinstance(config, Experiment):
            return config

        if not isinstance(config, Mapping):
            raise ValidationError(
                f"Invalid experiment configuration: expected mapping, got {type(config).__name__}"
            )

        for key in ("id", "name", "variations"):
            if not config.get(key):
                raise ValidationError(
                    "Invalid experiment configuration: missing required fields"
                )

        try:
            return Experiment.from_dict(
                config,
                now=now,
                default_duration_days=self.default_duration_days,
                default_min_sample_size=self.default_min_sample_size,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid experiment configuration: {e}") from e


def validate_experiment(experiment: Experiment) -> None:
    """実験設定の不変条件を検証

    Raises:
        ValidationError: 以下のいずれかに該当する場合
            - id / name / variations の欠落
            - バリエーションが2未満
            - バリエーションIDの重複、トラフィックが 0-100 の範囲外
            - トラフィック合計が 100 ± 0.01 でない
            - コントロールがちょうど1つでない
    """
    if not experiment.id or not experiment.name or not experiment.variations:
        raise ValidationError("Invalid experiment configuration: missing required fields")

    if len(experiment.variations) < 2:
        raise ValidationError("Experiment must have at least 2 variations")

    ids = [v.id for v in experiment.variations]
    if len(ids) != len(set(ids)):
        raise ValidationError(f"Variation ids must be unique: {ids}")

    for variation in experiment.variations:
        if not (0.0 <= variation.traffic <= 100.0):
            raise ValidationError(
                f"Variation '{variation.id}' traffic must be within 0-100, got {variation.traffic}"
            )

    total_traffic = sum(v.traffic for v in experiment.variations)
    if abs(total_traffic - 100.0) > TRAFFIC_TOLERANCE:
        raise ValidationError(
            f"Variation traffic percentages must sum to 100%, got {total_traffic}"
        )

    control_count = sum(1 for v in experiment.variations if v.is_control)
    if control_count != 1:
        raise ValidationError(
            f"Experiment must have exactly one control variation, got {control_count}"
        )
