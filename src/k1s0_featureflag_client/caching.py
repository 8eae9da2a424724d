"""永続ストア向けキャッシュデコレーター"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from typing import Any

from .exceptions import FeatureFlagClientError, FeatureFlagClientErrorCodes
from .store import AllData, DataKind, DataStore, Item

logger = logging.getLogger(__name__)


class StaleValuesPolicy(StrEnum):
    """TTL 経過後のキャッシュ値の扱い。"""

    EVICT = "evict"
    REFRESH = "refresh"
    REFRESH_ASYNC = "refresh_async"


@dataclass(frozen=True)
class DataStoreCacheConfig:
    """キャッシュ設定。ttl が None なら無期限、0 以下ならキャッシュ無効。"""

    ttl: timedelta | None = timedelta(seconds=15)
    stale_values_policy: StaleValuesPolicy = StaleValuesPolicy.EVICT

    @classmethod
    def disabled(cls) -> DataStoreCacheConfig:
        return cls(ttl=timedelta(0))

    @classmethod
    def enabled(cls, ttl: timedelta | None = timedelta(seconds=15)) -> DataStoreCacheConfig:
        return cls(ttl=ttl)

    def is_enabled(self) -> bool:
        return self.ttl is None or self.ttl > timedelta(0)

    def is_infinite(self) -> bool:
        return self.ttl is None

    def ttl_seconds(self) -> float | None:
        return None if self.ttl is None else self.ttl.total_seconds()


class PersistentDataStore(ABC):
    """シリアライズ済みデータを保持する永続ストアのコア。

    キャッシュやトゥームストーンの除外は CachingStoreWrapper が行うため、
    get_internal / get_all_internal は削除済みアイテムも返す。
    """

    @abstractmethod
    async def init_internal(self, all_data: AllData) -> None: ...

    @abstractmethod
    async def get_internal(self, kind: DataKind, key: str) -> Item | None: ...

    @abstractmethod
    async def get_all_internal(self, kind: DataKind) -> dict[str, Item]: ...

    @abstractmethod
    async def upsert_internal(self, kind: DataKind, item: Item) -> Item:
        """バージョンが新しければ保存する。保存後（または既存の新しい）アイテムを返す。"""
        ...

    @abstractmethod
    async def initialized_internal(self) -> bool: ...

    async def close(self) -> None:
        return None


class _CacheEntry:
    __slots__ = ("value", "expires_at", "_clock")

    def __init__(
        self, value: Any, ttl: float | None, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.value = value
        self._clock = clock
        self.expires_at: float | None = clock() + ttl if ttl is not None else None

    def is_expired(self) -> bool:
        return self.expires_at is not None and self._clock() >= self.expires_at


class CachingStoreWrapper(DataStore):
    """PersistentDataStore の前段に置くキャッシュ付き DataStore。

    書き込みは先にコアへ行い、成功した場合のみキャッシュを更新する。
    """

    def __init__(
        self,
        core: PersistentDataStore,
        cache_config: DataStoreCacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._core = core
        self._clock = clock
        self._config = cache_config or DataStoreCacheConfig()
        self._enabled = self._config.is_enabled()
        self._ttl = self._config.ttl_seconds()
        self._item_cache: dict[tuple[str, str], _CacheEntry] = {}
        self._all_cache: dict[str, _CacheEntry] = {}
        self._init_cache: _CacheEntry | None = None
        self._inited = False
        self._refresh_tasks: dict[tuple[str, str], asyncio.Task[None]] = {}

    @property
    def core(self) -> PersistentDataStore:
        return self._core

    def _entry(self, value: Any, ttl: float | None) -> _CacheEntry:
        return _CacheEntry(value, ttl, self._clock)

    async def init(self, all_data: AllData) -> None:
        await self._core.init_internal(all_data)
        if self._enabled:
            self._item_cache.clear()
            self._all_cache.clear()
            for kind, items in all_data.items():
                self._all_cache[kind.namespace] = self._entry(
                    _only_not_deleted(items), self._ttl
                )
                for key, item in items.items():
                    self._item_cache[(kind.namespace, key)] = self._entry(item, self._ttl)
        self._inited = True

    async def get(self, kind: DataKind, key: str) -> Item | None:
        if not self._enabled:
            return _item_if_not_deleted(await self._core.get_internal(kind, key))
        cache_key = (kind.namespace, key)
        entry = self._item_cache.get(cache_key)
        if entry is None:
            item = await self._load_item(kind, key)
        elif not entry.is_expired():
            item = entry.value
        elif self._config.stale_values_policy == StaleValuesPolicy.EVICT:
            del self._item_cache[cache_key]
            item = await self._load_item(kind, key)
        elif self._config.stale_values_policy == StaleValuesPolicy.REFRESH_ASYNC:
            self._schedule_refresh(kind, key)
            item = entry.value
        else:
            item = await self._refresh_item(kind, key, entry)
        return _item_if_not_deleted(item)

    async def all(self, kind: DataKind) -> dict[str, Item]:
        if not self._enabled:
            return _only_not_deleted(await self._core.get_all_internal(kind))
        entry = self._all_cache.get(kind.namespace)
        if entry is not None and not entry.is_expired():
            return dict(entry.value)
        if entry is not None and self._config.stale_values_policy != StaleValuesPolicy.EVICT:
            try:
                items = _only_not_deleted(await self._core.get_all_internal(kind))
            except Exception as e:
                logger.warning(
                    "Failed to refresh cached items; serving stale values",
                    extra={"kind": kind.namespace, "error": str(e)},
                )
                return dict(entry.value)
        else:
            self._all_cache.pop(kind.namespace, None)
            items = _only_not_deleted(await self._core.get_all_internal(kind))
        self._all_cache[kind.namespace] = self._entry(items, self._ttl)
        return dict(items)

    async def upsert(self, kind: DataKind, item: Item) -> bool:
        new_state = await self._core.upsert_internal(kind, item)
        if self._enabled:
            self._item_cache[(kind.namespace, item.key)] = self._entry(new_state, self._ttl)
            if self._config.is_infinite():
                entry = self._all_cache.get(kind.namespace)
                if entry is not None:
                    items = dict(entry.value)
                    if new_state.deleted:
                        items.pop(item.key, None)
                    else:
                        items[item.key] = new_state
                    self._all_cache[kind.namespace] = self._entry(items, None)
            else:
                self._all_cache.pop(kind.namespace, None)
        return new_state == item

    async def initialized(self) -> bool:
        if self._inited:
            return True
        if self._enabled:
            if self._init_cache is None or self._init_cache.is_expired():
                self._init_cache = self._entry(
                    await self._core.initialized_internal(), self._ttl
                )
            result = bool(self._init_cache.value)
        else:
            result = await self._core.initialized_internal()
        if result:
            self._inited = True
        return result

    async def close(self) -> None:
        tasks = list(self._refresh_tasks.values())
        self._refresh_tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._core.close()

    async def _load_item(self, kind: DataKind, key: str) -> Item | None:
        item = await self._core.get_internal(kind, key)
        self._item_cache[(kind.namespace, key)] = self._entry(item, self._ttl)
        return item

    async def _refresh_item(self, kind: DataKind, key: str, stale: _CacheEntry) -> Item | None:
        """コアから再読み込みする。失敗時は古い値を返す。"""
        try:
            return await self._load_item(kind, key)
        except Exception as e:
            logger.warning(
                "Failed to refresh cached item; serving stale value",
                extra={"kind": kind.namespace, "key": key, "error": str(e)},
            )
            return stale.value

    def _schedule_refresh(self, kind: DataKind, key: str) -> None:
        cache_key = (kind.namespace, key)
        if cache_key in self._refresh_tasks:
            return
        stale = self._item_cache[cache_key]

        async def refresh() -> None:
            try:
                await self._refresh_item(kind, key, stale)
            finally:
                self._refresh_tasks.pop(cache_key, None)

        self._refresh_tasks[cache_key] = asyncio.create_task(refresh())


def _item_if_not_deleted(item: Item | None) -> Item | None:
    return None if item is None or item.deleted else item


def _only_not_deleted(items: dict[str, Item] | Any) -> dict[str, Item]:
    return {k: v for k, v in items.items() if not v.deleted}


@dataclass
class PersistentBacking:
    """複数の InMemoryPersistentStore で共有できる格納領域（共有 DB の模擬）。"""

    items: dict[str, dict[str, Item]] = field(default_factory=dict)
    inited: bool = False


UpdateHook = Callable[[DataKind, Item], Awaitable[None]]


class InMemoryPersistentStore(PersistentDataStore):
    """テスト用インメモリ永続ストア。

    upsert は楽観的な compare-and-set ループで実装し、コミット直前に
    update_hook を呼び出す。テストではフック内で別インスタンスから書き込み、
    並行書き込みの競合を再現する。
    """

    def __init__(
        self,
        backing: PersistentBacking | None = None,
        update_hook: UpdateHook | None = None,
    ) -> None:
        self.backing = backing or PersistentBacking()
        self.update_hook = update_hook
        self.available = True
        self.query_count = 0

    def _check_available(self) -> None:
        if not self.available:
            raise FeatureFlagClientError(
                FeatureFlagClientErrorCodes.STORE_ERROR,
                "persistent store is unavailable",
            )

    async def init_internal(self, all_data: AllData) -> None:
        self._check_available()
        self.backing.items = {kind.namespace: dict(items) for kind, items in all_data.items()}
        self.backing.inited = True

    async def get_internal(self, kind: DataKind, key: str) -> Item | None:
        self._check_available()
        self.query_count += 1
        return self.backing.items.get(kind.namespace, {}).get(key)

    async def get_all_internal(self, kind: DataKind) -> dict[str, Item]:
        self._check_available()
        self.query_count += 1
        return dict(self.backing.items.get(kind.namespace, {}))

    async def upsert_internal(self, kind: DataKind, item: Item) -> Item:
        self._check_available()
        while True:
            items = self.backing.items.setdefault(kind.namespace, {})
            old = items.get(item.key)
            if old is not None and old.version >= item.version:
                return old
            if self.update_hook is not None:
                await self.update_hook(kind, item)
            # フック中に他の書き込みがあれば読み直す
            if items.get(item.key) is not old:
                continue
            items[item.key] = item
            return item

    async def initialized_internal(self) -> bool:
        self._check_available()
        self.query_count += 1
        return self.backing.inited
