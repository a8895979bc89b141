# 参加者のバリエーション割り当て
"""
AssignmentEngine: 参加者をバリエーションに振り分ける

割り当て方式（AllocationMethod ごとに差し替え可能）:
- random: [0, 100) の一様乱数を累積トラフィックと比較
- hash:   参加者IDの32bitローリングハッシュから 0-99 のバケットを決定（決定論的）
- sticky: hash と同じ計算結果を実験IDに依存しないキーでキャッシュし、
          同じ実験構成を使う複数の実験で同じバケットを返す

処理フロー:
    既存の割り当て → そのまま返す（冪等）
        ↓
    参加条件の判定（include / exclude）
        ↓
    方式に応じてバリエーション選択
        ↓
    ParticipantAssignment を保存
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from src.ab_testing.models import (
    AllocationMethod,
    Experiment,
    ParticipantAssignment,
    Variation,
)


logger = logging.getLogger(__name__)

_MASK_32 = 0xFFFFFFFF


def participant_hash(participant_id: str) -> int:
    """参加者IDの32bit符号付きローリングハッシュ（h = h * 31 + code）

    code は UTF-16 のコードユニット。BMP 外の文字はサロゲートペアの2単位として扱う。
    """
    data = participant_id.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        code = data[i] | (data[i + 1] << 8)
        h = (h * 31 + code) & _MASK_32
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def hash_bucket(participant_id: str) -> int:
    """参加者IDを 0-99 のバケットに写像"""
    return abs(participant_hash(participant_id)) % 100


def _select_by_share(
    variations: Sequence[Variation],
    point: float,
    inclusive: bool,
) -> Optional[str]:
    """累積トラフィックを走査して point が収まるバリエーションを返す

    該当なし（浮動小数点誤差など）の場合は先頭のバリエーションにフォールバック。
    """
    cumulative = 0.0
    for variation in variations:
        cumulative += variation.traffic
        if point < cumulative or (inclusive and point == cumulative):
            return variation.id
    return variations[0].id if variations else None


class AllocationStrategy:
    """割り当て方式の基底クラス"""

    def select(self, variations: Sequence[Variation], participant_id: str) -> Optional[str]:
        raise NotImplementedError


class RandomAllocation(AllocationStrategy):
    """一様乱数による割り当て"""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def select(self, variations: Sequence[Variation], participant_id: str) -> Optional[str]:
        draw = self.rng.random() * 100.0
        return _select_by_share(variations, draw, inclusive=True)


class HashAllocation(AllocationStrategy):
    """参加者IDのハッシュによる決定論的な割り当て"""

    def select(self, variations: Sequence[Variation], participant_id: str) -> Optional[str]:
        return _select_by_share(variations, hash_bucket(participant_id), inclusive=False)


class StickyAllocation(HashAllocation):
    """実験をまたいで同じ結果を返すハッシュ割り当て

    キャッシュキーは参加者IDのみ。キャッシュされたバリエーションIDが
    今回の実験に存在しない場合は再計算する。
    """

    def __init__(self) -> None:
        self._cache: Dict[str, str] = {}
        self._lock = Lock()

    def select(self, variations: Sequence[Variation], participant_id: str) -> Optional[str]:
        cache_key = f"sticky:{participant_id}"
        variation_ids = {v.id for v in variations}

        with self._lock:
            cached = self._cache.get(cache_key)
            if cached is not None and cached in variation_ids:
                return cached

            assigned = super().select(variations, participant_id)
            if assigned is not None:
                self._cache[cache_key] = assigned
            return assigned

    def cached(self, participant_id: str) -> Optional[str]:
        with self._lock:
            return self._cache.get(f"sticky:{participant_id}")

    def forget(self, participant_id: str) -> bool:
        """参加者のキャッシュを削除

        Returns:
            キャッシュが存在した場合 True
        """
        with self._lock:
            return self._cache.pop(f"sticky:{participant_id}", None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


@dataclass
class AssignmentDecision:
    """割り当て結果

    Attributes:
        variation_id: 割り当てたバリエーション（割り当てなしの場合 None）
        is_new: 新規に割り当てた場合 True（サンプル数カウンターの更新対象）
        reason: "assigned" | "existing" | "restored" | "criteria" | "no_variation"
    """
    variation_id: Optional[str]
    is_new: bool
    reason: str


class AssignmentEngine:
    """参加者の割り当てを管理するクラス

    スレッドセーフ:
        既存割り当ての確認から保存までを1つのロックで保護する。
        同じ参加者への同時呼び出しでも、後続の呼び出しは先行の結果を参照する。

    Attributes:
        _assignments: (実験ID, 参加者ID) → ParticipantAssignment
        _variation_cache: (実験ID, 参加者ID) → バリエーションID
            保持期間スイープで割り当て記録が消えた後も同じバリエーションを返すために使う
        _strategies: AllocationMethod → AllocationStrategy
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self._assignments: Dict[Tuple[str, str], ParticipantAssignment] = {}
        self._variation_cache: Dict[Tuple[str, str], str] = {}
        self._strategies: Dict[AllocationMethod, AllocationStrategy] = {
            AllocationMethod.RANDOM: RandomAllocation(rng),
            AllocationMethod.HASH: HashAllocation(),
            AllocationMethod.STICKY: StickyAllocation(),
        }
        self._lock = Lock()

    def register_strategy(self, method: AllocationMethod, strategy: AllocationStrategy) -> None:
        """割り当て方式を差し替える"""
        self._strategies[AllocationMethod(method)] = strategy

    def get_strategy(self, method: AllocationMethod) -> AllocationStrategy:
        return self._strategies.get(
            AllocationMethod(method), self._strategies[AllocationMethod.RANDOM]
        )

    def assign(
        self,
        experiment: Experiment,
        participant_id: str,
        metadata: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> AssignmentDecision:
        """参加者をバリエーションに割り当て

        実験の active 判定は呼び出し側（ExperimentManager）で行う。

        Args:
            experiment: 対象の実験
            participant_id: 参加者ID
            metadata: 参加条件の判定に使うメタデータ
            now: 割り当て時刻

        Returns:
            AssignmentDecision
        """
        key = (experiment.id, participant_id)
        metadata = dict(metadata or {})
        now = now or datetime.now()

        with self._lock:
            existing = self._assignments.get(key)
            if existing is not None:
                return AssignmentDecision(existing.variation_id, False, "existing")

            cached = self._variation_cache.get(key)
            if cached is not None and experiment.get_variation(cached) is not None:
                self._assignments[key] = ParticipantAssignment(
                    experiment_id=experiment.id,
                    participant_id=participant_id,
                    variation_id=cached,
                    assigned_at=now,
                    metadata=metadata,
                )
                logger.debug(
                    f"キャッシュから割り当てを復元: experiment_id={experiment.id}, "
                    f"participant_id={participant_id}, variation_id={cached}"
                )
                return AssignmentDecision(cached, False, "restored")

            if not experiment.allocation.criteria.is_eligible(metadata):
                logger.debug(
                    f"参加条件を満たさない: experiment_id={experiment.id}, "
                    f"participant_id={participant_id}"
                )
                return AssignmentDecision(None, False, "criteria")

            strategy = self.get_strategy(experiment.allocation.method)
            variation_id = strategy.select(experiment.variations, participant_id)
            if variation_id is None:
                return AssignmentDecision(None, False, "no_variation")

            self._assignments[key] = ParticipantAssignment(
                experiment_id=experiment.id,
                participant_id=participant_id,
                variation_id=variation_id,
                assigned_at=now,
                metadata=metadata,
            )
            self._variation_cache[key] = variation_id

        logger.debug(
            f"参加者を割り当て: experiment_id={experiment.id}, "
            f"participant_id={participant_id}, variation_id={variation_id}"
        )
        return AssignmentDecision(variation_id, True, "assigned")

    def get_assignment(
        self,
        experiment_id: str,
        participant_id: str,
    ) -> Optional[ParticipantAssignment]:
        with self._lock:
            return self._assignments.get((experiment_id, participant_id))

    def assignments_for(self, experiment_id: str) -> List[ParticipantAssignment]:
        with self._lock:
            return [a for (exp_id, _), a in self._assignments.items() if exp_id == experiment_id]

    def purge_experiment(self, experiment_id: str) -> int:
        """実験に属する割り当てとキャッシュを全て削除

        どの実験からも参照されなくなった参加者は sticky キャッシュからも削除する。

        Returns:
            削除した割り当て数
        """
        with self._lock:
            keys = [k for k in self._assignments if k[0] == experiment_id]
            for key in keys:
                del self._assignments[key]
            cache_keys = [k for k in self._variation_cache if k[0] == experiment_id]
            for key in cache_keys:
                del self._variation_cache[key]
            self._release_sticky({pid for _, pid in keys} | {pid for _, pid in cache_keys})
        return len(keys)

    def purge(
        self,
        should_remove: Callable[[ParticipantAssignment], bool],
        should_forget: Optional[Callable[[str], bool]] = None,
    ) -> int:
        """条件に一致する割り当てを削除

        Args:
            should_remove: True を返した割り当て記録を削除
            should_forget: True を返した実験IDのキャッシュも削除

        Returns:
            削除した割り当て数
        """
        with self._lock:
            keys = [k for k, a in self._assignments.items() if should_remove(a)]
            for key in keys:
                del self._assignments[key]
            if should_forget is not None:
                cache_keys = [k for k in self._variation_cache if should_forget(k[0])]
                for key in cache_keys:
                    del self._variation_cache[key]
                self._release_sticky({pid for _, pid in keys} | {pid for _, pid in cache_keys})
        return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._assignments)

    # ===== Private Methods =====

    def _release_sticky(self, participant_ids: Set[str]) -> int:
        """割り当てもキャッシュも残っていない参加者の sticky キャッシュを削除（ロック保持中に呼ぶ）"""
        strategy = self._strategies.get(AllocationMethod.STICKY)
        if not isinstance(strategy, StickyAllocation) or not participant_ids:
            return 0

        referenced = {pid for _, pid in self._assignments}
        referenced.update(pid for _, pid in self._variation_cache)
        released = sum(1 for pid in participant_ids - referenced if strategy.forget(pid))
        if released:
            logger.debug(f"sticky キャッシュを削除: {released} 件")
        return released
