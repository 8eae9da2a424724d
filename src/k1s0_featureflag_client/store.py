"""DataStore 抽象とインメモリ実装"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from .models import FeatureFlag, Segment

Item = Union[FeatureFlag, Segment]
AllData = Mapping["DataKind", Mapping[str, Item]]


@dataclass(frozen=True)
class DataKind:
    """ストアに格納するデータ種別（flags / segments）。"""

    namespace: str
    stream_path: str
    decoder: Callable[[dict[str, Any]], Item]
    tombstone: Callable[[str, int], Item]

    def from_dict(self, data: dict[str, Any]) -> Item:
        return self.decoder(data)

    def make_deleted_item(self, key: str, version: int) -> Item:
        """削除済みを表すトゥームストーンを生成する。"""
        return self.tombstone(key, version)

    def __str__(self) -> str:
        return self.namespace


FEATURES = DataKind(
    namespace="features",
    stream_path="/flags/",
    decoder=FeatureFlag.from_dict,
    tombstone=lambda key, version: FeatureFlag(key=key, version=version, deleted=True),
)

SEGMENTS = DataKind(
    namespace="segments",
    stream_path="/segments/",
    decoder=Segment.from_dict,
    tombstone=lambda key, version: Segment(key=key, version=version, deleted=True),
)

ALL_KINDS: tuple[DataKind, ...] = (SEGMENTS, FEATURES)


class DataStore(ABC):
    """フラグ・セグメントを保持するデータストア。

    get / all は削除済み（トゥームストーン）を返さない。upsert / delete は
    既存より大きいバージョンの場合のみ反映する。
    """

    @abstractmethod
    async def init(self, all_data: AllData) -> None:
        """全データを置き換え、初期化済みにする。"""
        ...

    @abstractmethod
    async def get(self, kind: DataKind, key: str) -> Item | None: ...

    @abstractmethod
    async def all(self, kind: DataKind) -> dict[str, Item]: ...

    @abstractmethod
    async def upsert(self, kind: DataKind, item: Item) -> bool:
        """バージョンが新しい場合のみ保存し、保存したかどうかを返す。"""
        ...

    async def delete(self, kind: DataKind, key: str, version: int) -> bool:
        """トゥームストーンを upsert する。"""
        return await self.upsert(kind, kind.make_deleted_item(key, version))

    @abstractmethod
    async def initialized(self) -> bool: ...

    async def close(self) -> None:
        """リソースを解放する。"""
        return None


class InMemoryDataStore(DataStore):
    """インメモリデータストア。書き込みは asyncio.Lock で直列化する。"""

    def __init__(self) -> None:
        self._items: dict[DataKind, dict[str, Item]] = {}
        self._initialized = False
        self._lock = asyncio.Lock()

    async def init(self, all_data: AllData) -> None:
        async with self._lock:
            self._items = {kind: dict(items) for kind, items in all_data.items()}
            self._initialized = True

    async def get(self, kind: DataKind, key: str) -> Item | None:
        item = self._items.get(kind, {}).get(key)
        if item is None or item.deleted:
            return None
        return item

    async def all(self, kind: DataKind) -> dict[str, Item]:
        return {k: v for k, v in self._items.get(kind, {}).items() if not v.deleted}

    async def upsert(self, kind: DataKind, item: Item) -> bool:
        async with self._lock:
            items = self._items.setdefault(kind, {})
            old = items.get(item.key)
            if old is not None and old.version >= item.version:
                return False
            items[item.key] = item
            return True

    async def initialized(self) -> bool:
        return self._initialized


def sort_all_data(all_data: AllData) -> dict[DataKind, dict[str, Item]]:
    """セグメントをフラグより先に、フラグは前提条件が先になるよう並べ替える。

    dict の挿入順がそのまま書き込み順になる。
    """
    result: dict[DataKind, dict[str, Item]] = {}
    for kind in ALL_KINDS:
        if kind in all_data:
            items = all_data[kind]
            result[kind] = _sort_flags(items) if kind is FEATURES else dict(items)
    for kind, items in all_data.items():
        if kind not in result:
            result[kind] = dict(items)
    return result


def _sort_flags(items: Mapping[str, Item]) -> dict[str, Item]:
    ordered: dict[str, Item] = {}
    visiting: set[str] = set()

    def visit(key: str) -> None:
        if key in ordered or key in visiting or key not in items:
            return
        visiting.add(key)
        item = items[key]
        if isinstance(item, FeatureFlag):
            for prereq in item.prerequisites:
                visit(prereq.key)
        visiting.discard(key)
        ordered[key] = item

    for key in items:
        visit(key)
    return ordered
