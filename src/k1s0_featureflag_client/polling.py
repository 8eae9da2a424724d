"""PollingDataSource — 定期ポーリングによる更新"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from .data_source import DataSource
from .exceptions import FeatureFlagClientError
from .http_util import http_error_message, is_http_error_recoverable
from .requestor import HttpFeatureRequestor
from .store import DataStore, sort_all_data

logger = logging.getLogger(__name__)


class PollingDataSource(DataSource):
    """poll_interval 秒ごとに全データを取得してストアを置き換える。"""

    def __init__(
        self, requestor: HttpFeatureRequestor, store: DataStore, poll_interval: float
    ) -> None:
        self._requestor = requestor
        self._store = store
        self._poll_interval = poll_interval
        self._ready = asyncio.Event()
        self._initialized = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> asyncio.Event:
        logger.info(
            "Starting polling data source", extra={"poll_interval": self._poll_interval}
        )
        if self._task is None:
            self._task = asyncio.create_task(self._poll_loop())
        return self._ready

    def is_initialized(self) -> bool:
        return self._initialized

    async def poll_once(self) -> bool:
        """1 回ポーリングする。ポーリングを継続すべきなら True を返す。"""
        try:
            all_data, not_modified = await self._requestor.get_all_data()
        except FeatureFlagClientError as e:
            if e.status is not None and not is_http_error_recoverable(e.status):
                logger.error(http_error_message(e.status, "polling request", "will retry"))
                self._ready.set()
                return False
            logger.warning("Error polling for flag data", extra={"error": str(e)})
            return True
        if not not_modified or not self._initialized:
            await self._store.init(sort_all_data(all_data))
        if not self._initialized:
            logger.info("Initialized feature flag data via polling")
            self._initialized = True
            self._ready.set()
        return True

    async def _poll_loop(self) -> None:
        """ポーリングループ。"""
        while True:
            try:
                if not await self.poll_once():
                    return
            except Exception as e:
                logger.error("Polling error", extra={"error": str(e)})
            await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._requestor.close()
