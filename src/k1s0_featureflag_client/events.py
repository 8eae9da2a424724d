"""分析イベントモデルと EventFactory"""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Callable
from dataclasses import dataclass

from .models import FeatureFlag
from .reason import ErrorKind, EvaluationDetail, EvaluationReason, ReasonKind
from .user import User
from .value import FlagValue


def now_millis() -> int:
    """現在時刻をエポックミリ秒で返す。"""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Event:
    """イベント基底クラス。"""

    creation_date: int
    user: User | None


@dataclass(frozen=True)
class FeatureRequestEvent(Event):
    """フラグ評価 1 回分のイベント。"""

    key: str
    version: int | None = None
    variation: int | None = None
    value: FlagValue = FlagValue.null()
    default: FlagValue = FlagValue.null()
    reason: EvaluationReason | None = None
    prereq_of: str | None = None
    track_events: bool = False
    debug_events_until_date: int | None = None
    debug: bool = False

    def to_debug(self) -> FeatureRequestEvent:
        """デバッグ出力用のコピーを返す。"""
        return dataclasses.replace(self, debug=True)


@dataclass(frozen=True)
class CustomEvent(Event):
    """track() で送られる任意イベント。"""

    key: str
    data: FlagValue | None = None
    metric_value: float | None = None


@dataclass(frozen=True)
class IdentifyEvent(Event):
    """identify() で送られるユーザー登録イベント。"""


@dataclass(frozen=True)
class IndexEvent(Event):
    """ウィンドウ内で初めて見たユーザーを通知するイベント。"""


class EventFactory:
    """評価結果からイベントを生成する。

    with_reasons が True なら常に評価理由を含める。実験対象のルールまたは
    fallthrough の場合は with_reasons に関わらず理由を含め、track_events を立てる。
    """

    def __init__(
        self, with_reasons: bool = False, clock: Callable[[], int] = now_millis
    ) -> None:
        self._with_reasons = with_reasons
        self._clock = clock

    @property
    def with_reasons(self) -> bool:
        return self._with_reasons

    def new_feature_request_event(
        self,
        flag: FeatureFlag,
        user: User | None,
        detail: EvaluationDetail[FlagValue],
        default: FlagValue,
        prereq_of: str | None = None,
    ) -> FeatureRequestEvent:
        experiment = _is_experiment(flag, detail.reason)
        return FeatureRequestEvent(
            creation_date=self._clock(),
            user=user,
            key=flag.key,
            version=flag.version,
            variation=detail.variation_index,
            value=detail.value,
            default=default,
            reason=detail.reason if (self._with_reasons or experiment) else None,
            prereq_of=prereq_of,
            track_events=flag.track_events or experiment,
            debug_events_until_date=flag.debug_events_until_date,
        )

    def new_prerequisite_event(
        self,
        prereq_flag: FeatureFlag,
        user: User | None,
        detail: EvaluationDetail[FlagValue],
        prereq_of: FeatureFlag,
    ) -> FeatureRequestEvent:
        return self.new_feature_request_event(
            prereq_flag, user, detail, FlagValue.null(), prereq_of=prereq_of.key
        )

    def new_default_event(
        self, flag: FeatureFlag, user: User | None, default: FlagValue, error_kind: ErrorKind
    ) -> FeatureRequestEvent:
        """評価できなかった既存フラグのイベント（既定値を返した場合）。"""
        return FeatureRequestEvent(
            creation_date=self._clock(),
            user=user,
            key=flag.key,
            version=flag.version,
            value=default,
            default=default,
            reason=EvaluationReason.error(error_kind) if self._with_reasons else None,
            track_events=flag.track_events,
            debug_events_until_date=flag.debug_events_until_date,
        )

    def new_unknown_flag_event(
        self, key: str, user: User | None, default: FlagValue, error_kind: ErrorKind
    ) -> FeatureRequestEvent:
        return FeatureRequestEvent(
            creation_date=self._clock(),
            user=user,
            key=key,
            value=default,
            default=default,
            reason=EvaluationReason.error(error_kind) if self._with_reasons else None,
        )

    def new_custom_event(
        self,
        key: str,
        user: User | None,
        data: FlagValue | None = None,
        metric_value: float | None = None,
    ) -> CustomEvent:
        return CustomEvent(
            creation_date=self._clock(),
            user=user,
            key=key,
            data=data,
            metric_value=metric_value,
        )

    def new_identify_event(self, user: User) -> IdentifyEvent:
        return IdentifyEvent(creation_date=self._clock(), user=user)


def _is_experiment(flag: FeatureFlag, reason: EvaluationReason | None) -> bool:
    if reason is None:
        return False
    if reason.kind == ReasonKind.FALLTHROUGH:
        return flag.track_events_fallthrough
    if reason.kind == ReasonKind.RULE_MATCH:
        index = reason.rule_index
        if index is not None and 0 <= index < len(flag.rules):
            return flag.rules[index].track_events
    return False
