"""フラグ評価イベントの集計"""

from __future__ import annotations

from dataclasses import dataclass, field

from .events import FeatureRequestEvent
from .value import FlagValue


@dataclass(frozen=True)
class CounterKey:
    """集計カウンタのキー。version が None なら未知のフラグ。"""

    key: str
    variation: int | None
    version: int | None


@dataclass
class CounterValue:
    count: int
    value: FlagValue
    default: FlagValue


@dataclass
class EventSummary:
    """フラッシュ間隔内の評価集計。"""

    counters: dict[CounterKey, CounterValue] = field(default_factory=dict)
    start_date: int = 0
    end_date: int = 0

    def is_empty(self) -> bool:
        return not self.counters


class EventSummarizer:
    """FeatureRequestEvent をフラグ・バリエーション・バージョン単位で数える。

    プロセッサーのワーカータスクだけが操作するため排他制御は行わない。
    """

    def __init__(self) -> None:
        self._summary = EventSummary()

    def summarize_event(self, event: FeatureRequestEvent) -> None:
        key = CounterKey(event.key, event.variation, event.version)
        counter = self._summary.counters.get(key)
        if counter is None:
            self._summary.counters[key] = CounterValue(1, event.value, event.default)
        else:
            counter.count += 1
        date = event.creation_date
        if self._summary.start_date == 0 or date < self._summary.start_date:
            self._summary.start_date = date
        if date > self._summary.end_date:
            self._summary.end_date = date

    def snapshot(self) -> EventSummary:
        """現在の集計を返し、内部状態をリセットする。"""
        summary = self._summary
        self._summary = EventSummary()
        return summary

    def is_empty(self) -> bool:
        return self._summary.is_empty()
