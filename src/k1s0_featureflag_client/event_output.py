"""分析イベントの送信用 JSON 構造への変換"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from .events import CustomEvent, Event, FeatureRequestEvent, IdentifyEvent, IndexEvent
from .summarizer import EventSummary
from .user import BUILTIN_ATTRIBUTES, NON_PRIVATE_ATTRIBUTES, User
from .value import FlagValue


class EventOutputFormatter:
    """イベントと集計を送信ペイロード（dict のリスト）に変換する。

    ユーザーはプライベート属性を除去して出力し、除去した属性名を
    privateAttrs に列挙する。
    """

    def __init__(
        self,
        all_attributes_private: bool = False,
        private_attribute_names: Iterable[str] = (),
        inline_users_in_events: bool = False,
    ) -> None:
        self._all_private = all_attributes_private
        self._private_names = frozenset(private_attribute_names)
        self._inline_users = inline_users_in_events

    def make_output_events(
        self, events: Sequence[Event], summary: EventSummary
    ) -> list[dict[str, Any]]:
        """イベントを順に変換し、集計があれば末尾に summary を追加する。"""
        output = [self._output_event(e) for e in events]
        if not summary.is_empty():
            output.append(self._summary_event(summary))
        return output

    def format_user(self, user: User) -> dict[str, Any]:
        private = self._private_names | user.private_attribute_names
        data: dict[str, Any] = {}
        redacted: list[str] = []
        for attr, field_name in BUILTIN_ATTRIBUTES.items():
            value = getattr(user, field_name)
            if value is None:
                continue
            if attr not in NON_PRIVATE_ATTRIBUTES and (self._all_private or attr in private):
                redacted.append(attr)
                continue
            data[attr] = value
        custom: dict[str, Any] = {}
        for name, value in user.custom.items():
            if self._all_private or name in private:
                redacted.append(name)
                continue
            custom[name] = FlagValue.of(value).to_json()
        if custom:
            data["custom"] = custom
        if redacted:
            data["privateAttrs"] = sorted(redacted)
        return data

    def _output_event(self, event: Event) -> dict[str, Any]:
        if isinstance(event, FeatureRequestEvent):
            out = _start(event, "debug" if event.debug else "feature", event.key)
            self._user_or_key(out, event.user, force_inline=event.debug)
            if event.version is not None:
                out["version"] = event.version
            if event.variation is not None:
                out["variation"] = event.variation
            _put_value(out, "value", event.value)
            _put_value(out, "default", event.default)
            if event.prereq_of is not None:
                out["prereqOf"] = event.prereq_of
            if event.reason is not None:
                out["reason"] = event.reason.to_dict()
            return out
        if isinstance(event, IdentifyEvent):
            out = _start(event, "identify", event.user.key if event.user else None)
            if event.user is not None:
                out["user"] = self.format_user(event.user)
            return out
        if isinstance(event, CustomEvent):
            out = _start(event, "custom", event.key)
            self._user_or_key(out, event.user, force_inline=False)
            if event.data is not None:
                _put_value(out, "data", event.data)
            if event.metric_value is not None:
                out["metricValue"] = event.metric_value
            return out
        if isinstance(event, IndexEvent):
            out = _start(event, "index", None)
            if event.user is not None:
                out["user"] = self.format_user(event.user)
            return out
        raise TypeError(f"unsupported event type: {type(event).__name__}")

    def _user_or_key(self, out: dict[str, Any], user: User | None, force_inline: bool) -> None:
        if user is None:
            return
        if self._inline_users or force_inline:
            out["user"] = self.format_user(user)
        else:
            out["userKey"] = user.key

    def _summary_event(self, summary: EventSummary) -> dict[str, Any]:
        features: dict[str, dict[str, Any]] = {}
        for key, counter in summary.counters.items():
            flag = features.get(key.key)
            if flag is None:
                flag = {"counters": []}
                _put_value(flag, "default", counter.default)
                features[key.key] = flag
            out: dict[str, Any] = {}
            if key.variation is not None:
                out["variation"] = key.variation
            if key.version is not None:
                out["version"] = key.version
            else:
                out["unknown"] = True
            _put_value(out, "value", counter.value)
            out["count"] = counter.count
            flag["counters"].append(out)
        return {
            "kind": "summary",
            "startDate": summary.start_date,
            "endDate": summary.end_date,
            "features": features,
        }


def _start(event: Event, kind: str, key: str | None) -> dict[str, Any]:
    out: dict[str, Any] = {"kind": kind, "creationDate": event.creation_date}
    if key is not None:
        out["key"] = key
    return out


def _put_value(out: dict[str, Any], name: str, value: FlagValue | None) -> None:
    if value is not None and not value.is_null():
        out[name] = value.to_json()
