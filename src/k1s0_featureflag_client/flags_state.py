"""all_flags_state の結果モデル"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .events import now_millis
from .models import FeatureFlag
from .reason import EvaluationDetail, EvaluationReason
from .value import FlagValue


@dataclass(frozen=True)
class FlagMetadata:
    """フラグ 1 件分のメタデータ。"""

    variation: int | None = None
    version: int | None = None
    reason: EvaluationReason | None = None
    track_events: bool = False
    debug_events_until_date: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.variation is not None:
            data["variation"] = self.variation
        if self.version is not None:
            data["version"] = self.version
        if self.reason is not None:
            data["reason"] = self.reason.to_dict()
        if self.track_events:
            data["trackEvents"] = True
        if self.debug_events_until_date is not None:
            data["debugEventsUntilDate"] = self.debug_events_until_date
        return data


@dataclass
class FeatureFlagsState:
    """あるユーザーに対する全フラグの評価結果のスナップショット。"""

    values: dict[str, FlagValue] = field(default_factory=dict)
    metadata: dict[str, FlagMetadata] = field(default_factory=dict)
    valid: bool = True

    def add_flag(
        self,
        flag: FeatureFlag,
        detail: EvaluationDetail[FlagValue],
        with_reasons: bool = False,
        details_only_for_tracked_flags: bool = False,
    ) -> None:
        """評価結果を追加する。追跡対象外のフラグは詳細を省略できる。"""
        include_details = True
        if details_only_for_tracked_flags:
            debugging = (
                flag.debug_events_until_date is not None
                and flag.debug_events_until_date > now_millis()
            )
            include_details = flag.track_events or debugging
        self.values[flag.key] = detail.value
        self.metadata[flag.key] = FlagMetadata(
            variation=detail.variation_index,
            version=flag.version if include_details else None,
            reason=detail.reason if (with_reasons and include_details) else None,
            track_events=flag.track_events,
            debug_events_until_date=flag.debug_events_until_date,
        )

    def is_valid(self) -> bool:
        return self.valid

    def get_flag_value(self, key: str) -> FlagValue:
        return self.values.get(key, FlagValue.null())

    def get_flag_reason(self, key: str) -> EvaluationReason | None:
        meta = self.metadata.get(key)
        return meta.reason if meta is not None else None

    def to_values_map(self) -> dict[str, Any]:
        return {k: v.to_json() for k, v in self.values.items()}

    def to_json_dict(self) -> dict[str, Any]:
        """フロントエンドへの受け渡し用 JSON 構造を返す。"""
        data = self.to_values_map()
        data["$flagsState"] = {k: m.to_dict() for k, m in self.metadata.items()}
        data["$valid"] = self.valid
        return data
