# 参加条件（インクルード / エクスクルード）
"""
参加者メタデータに対する条件判定

条件文字列は実験作成時に一度だけパースし、以下のいずれかに変換する:
- EqualityCriterion: "key=value" 形式。値は大文字小文字を区別せず比較
- PresenceCriterion: "key" 形式。メタデータにキーが存在するか

判定ルール:
- include: いずれか1つでも一致すれば通過（OR）。空なら条件なし
- exclude: いずれか1つでも一致すれば除外
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Tuple, Union


@dataclass(frozen=True)
class EqualityCriterion:
    """メタデータの値一致条件（key=value）"""
    key: str
    value: str

    def matches(self, metadata: Mapping[str, Any]) -> bool:
        actual = metadata.get(self.key)
        if actual is None:
            return False
        return str(actual).lower() == self.value.lower()

    def __str__(self) -> str:
        return f"{self.key}={self.value}"


@dataclass(frozen=True)
class PresenceCriterion:
    """メタデータのキー存在条件"""
    key: str

    def matches(self, metadata: Mapping[str, Any]) -> bool:
        return self.key in metadata

    def __str__(self) -> str:
        return self.key


Criterion = Union[EqualityCriterion, PresenceCriterion]


def parse_criterion(raw: Union[str, Criterion]) -> Criterion:
    """条件文字列をパース

    Args:
        raw: "key=value" または "key"。パース済みの条件はそのまま返す

    Returns:
        EqualityCriterion または PresenceCriterion

    Raises:
        ValueError: キーが空の場合
    """
    if isinstance(raw, (EqualityCriterion, PresenceCriterion)):
        return raw

    text = str(raw).strip()
    if "=" in text:
        key, _, value = text.partition("=")
        key = key.strip()
        if not key:
            raise ValueError(f"Invalid criterion '{raw}': empty key")
        return EqualityCriterion(key=key, value=value.strip())

    if not text:
        raise ValueError("Invalid criterion: empty string")
    return PresenceCriterion(key=text)


@dataclass(frozen=True)
class AllocationCriteria:
    """参加条件のセット（パース済み）"""
    include: Tuple[Criterion, ...] = field(default_factory=tuple)
    exclude: Tuple[Criterion, ...] = field(default_factory=tuple)

    @classmethod
    def parse(
        cls,
        include: Optional[Iterable[Union[str, Criterion]]] = None,
        exclude: Optional[Iterable[Union[str, Criterion]]] = None,
    ) -> "AllocationCriteria":
        """文字列リストから条件セットを作成"""
        return cls(
            include=tuple(parse_criterion(c) for c in (include or ())),
            exclude=tuple(parse_criterion(c) for c in (exclude or ())),
        )

    def is_eligible(self, metadata: Optional[Mapping[str, Any]]) -> bool:
        """メタデータが参加条件を満たすか判定"""
        metadata = metadata or {}

        if self.include and not any(c.matches(metadata) for c in self.include):
            return False

        if any(c.matches(metadata) for c in self.exclude):
            return False

        return True

    def to_dict(self) -> dict:
        return {
            "include": [str(c) for c in self.include],
            "exclude": [str(c) for c in self.exclude],
        }
