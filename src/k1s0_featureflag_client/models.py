"""フラグ・セグメントのデータモデル"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .value import FlagValue


class Operator(StrEnum):
    """Clause の比較演算子。"""

    IN = "in"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    CONTAINS = "contains"
    MATCHES = "matches"
    LESS_THAN = "lessThan"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    BEFORE = "before"
    AFTER = "after"
    SEMVER_EQUAL = "semVerEqual"
    SEMVER_LESS_THAN = "semVerLessThan"
    SEMVER_GREATER_THAN = "semVerGreaterThan"
    SEGMENT_MATCH = "segmentMatch"

    @classmethod
    def parse(cls, name: str | None) -> Operator | None:
        """未知の演算子名は None（どのユーザーにもマッチしない）として扱う。"""
        if name is None:
            return None
        try:
            return cls(name)
        except ValueError:
            return None


def _opt_int(value: Any) -> int | None:
    return None if value is None else int(value)


@dataclass(frozen=True)
class Clause:
    """ユーザー属性に対する条件。values のいずれかに一致すればマッチ（negate で反転）。"""

    attribute: str
    op: Operator | None
    values: tuple[FlagValue, ...] = ()
    negate: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Clause:
        return cls(
            attribute=data.get("attribute", ""),
            op=Operator.parse(data.get("op")),
            values=tuple(FlagValue.of(v) for v in data.get("values") or ()),
            negate=bool(data.get("negate", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "attribute": self.attribute,
            "op": self.op.value if self.op is not None else None,
            "values": [v.to_json() for v in self.values],
            "negate": self.negate,
        }


@dataclass(frozen=True)
class WeightedVariation:
    """ロールアウト内のバリエーションと重み（100000 分率）。"""

    variation: int
    weight: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WeightedVariation:
        return cls(variation=int(data.get("variation", 0)), weight=int(data.get("weight", 0)))

    def to_dict(self) -> dict[str, Any]:
        return {"variation": self.variation, "weight": self.weight}


@dataclass(frozen=True)
class Rollout:
    """パーセンテージロールアウト。"""

    variations: tuple[WeightedVariation, ...] = ()
    bucket_by: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Rollout:
        return cls(
            variations=tuple(WeightedVariation.from_dict(v) for v in data.get("variations") or ()),
            bucket_by=data.get("bucketBy"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"variations": [v.to_dict() for v in self.variations]}
        if self.bucket_by is not None:
            data["bucketBy"] = self.bucket_by
        return data


@dataclass(frozen=True)
class VariationOrRollout:
    """固定バリエーション番号、またはロールアウトのどちらか。"""

    variation: int | None = None
    rollout: Rollout | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> VariationOrRollout:
        data = data or {}
        rollout = data.get("rollout")
        return cls(
            variation=_opt_int(data.get("variation")),
            rollout=Rollout.from_dict(rollout) if rollout is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.variation is not None:
            data["variation"] = self.variation
        if self.rollout is not None:
            data["rollout"] = self.rollout.to_dict()
        return data


@dataclass(frozen=True)
class Rule(VariationOrRollout):
    """フラグのターゲティングルール。clauses はすべて満たす必要がある。"""

    id: str | None = None
    clauses: tuple[Clause, ...] = ()
    track_events: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Rule:
        data = data or {}
        base = VariationOrRollout.from_dict(data)
        return cls(
            variation=base.variation,
            rollout=base.rollout,
            id=data.get("id"),
            clauses=tuple(Clause.from_dict(c) for c in data.get("clauses") or ()),
            track_events=bool(data.get("trackEvents", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.id is not None:
            data["id"] = self.id
        data["clauses"] = [c.to_dict() for c in self.clauses]
        data["trackEvents"] = self.track_events
        return data


@dataclass(frozen=True)
class Target:
    """ユーザーキーの明示的なターゲット指定。"""

    variation: int
    values: frozenset[str] = frozenset()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Target:
        return cls(
            variation=int(data.get("variation", 0)),
            values=frozenset(data.get("values") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"variation": self.variation, "values": sorted(self.values)}


@dataclass(frozen=True)
class Prerequisite:
    """前提条件フラグとその要求バリエーション番号。"""

    key: str
    variation: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Prerequisite:
        return cls(key=data["key"], variation=int(data.get("variation", 0)))

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "variation": self.variation}


@dataclass(frozen=True)
class FeatureFlag:
    """フィーチャーフラグ定義。"""

    key: str
    version: int = 0
    on: bool = False
    prerequisites: tuple[Prerequisite, ...] = ()
    targets: tuple[Target, ...] = ()
    rules: tuple[Rule, ...] = ()
    fallthrough: VariationOrRollout = field(default_factory=VariationOrRollout)
    off_variation: int | None = None
    variations: tuple[FlagValue, ...] = ()
    salt: str = ""
    track_events: bool = False
    track_events_fallthrough: bool = False
    debug_events_until_date: int | None = None
    client_side: bool = False
    deleted: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureFlag:
        """API レスポンス辞書から FeatureFlag を生成する。"""
        return cls(
            key=data["key"],
            version=int(data.get("version", 0)),
            on=bool(data.get("on", False)),
            prerequisites=tuple(Prerequisite.from_dict(p) for p in data.get("prerequisites") or ()),
            targets=tuple(Target.from_dict(t) for t in data.get("targets") or ()),
            rules=tuple(Rule.from_dict(r) for r in data.get("rules") or ()),
            fallthrough=VariationOrRollout.from_dict(data.get("fallthrough")),
            off_variation=_opt_int(data.get("offVariation")),
            variations=tuple(FlagValue.of(v) for v in data.get("variations") or ()),
            salt=data.get("salt") or "",
            track_events=bool(data.get("trackEvents", False)),
            track_events_fallthrough=bool(data.get("trackEventsFallthrough", False)),
            debug_events_until_date=_opt_int(data.get("debugEventsUntilDate")),
            client_side=bool(data.get("clientSide", False)),
            deleted=bool(data.get("deleted", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key": self.key,
            "version": self.version,
            "on": self.on,
            "prerequisites": [p.to_dict() for p in self.prerequisites],
            "targets": [t.to_dict() for t in self.targets],
            "rules": [r.to_dict() for r in self.rules],
            "fallthrough": self.fallthrough.to_dict(),
            "variations": [v.to_json() for v in self.variations],
            "salt": self.salt,
            "trackEvents": self.track_events,
            "trackEventsFallthrough": self.track_events_fallthrough,
            "clientSide": self.client_side,
            "deleted": self.deleted,
        }
        if self.off_variation is not None:
            data["offVariation"] = self.off_variation
        if self.debug_events_until_date is not None:
            data["debugEventsUntilDate"] = self.debug_events_until_date
        return data


@dataclass(frozen=True)
class SegmentRule:
    """セグメントのルール。weight 指定時はバケット値で絞り込む。"""

    clauses: tuple[Clause, ...] = ()
    weight: int | None = None
    bucket_by: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SegmentRule:
        return cls(
            clauses=tuple(Clause.from_dict(c) for c in data.get("clauses") or ()),
            weight=_opt_int(data.get("weight")),
            bucket_by=data.get("bucketBy"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"clauses": [c.to_dict() for c in self.clauses]}
        if self.weight is not None:
            data["weight"] = self.weight
        if self.bucket_by is not None:
            data["bucketBy"] = self.bucket_by
        return data


@dataclass(frozen=True)
class Segment:
    """ユーザーセグメント定義。included は excluded より優先される。"""

    key: str
    version: int = 0
    included: frozenset[str] = frozenset()
    excluded: frozenset[str] = frozenset()
    rules: tuple[SegmentRule, ...] = ()
    salt: str = ""
    deleted: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Segment:
        return cls(
            key=data["key"],
            version=int(data.get("version", 0)),
            included=frozenset(data.get("included") or ()),
            excluded=frozenset(data.get("excluded") or ()),
            rules=tuple(SegmentRule.from_dict(r) for r in data.get("rules") or ()),
            salt=data.get("salt") or "",
            deleted=bool(data.get("deleted", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "version": self.version,
            "included": sorted(self.included),
            "excluded": sorted(self.excluded),
            "rules": [r.to_dict() for r in self.rules],
            "salt": self.salt,
            "deleted": self.deleted,
        }
