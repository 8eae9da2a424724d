"""StreamingDataSource — Server-Sent Events による更新"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
from typing import Any

import httpx
from httpx_sse import aconnect_sse

from .config import Config
from .data_source import DataSource
from .diagnostics import DiagnosticAccumulator
from .events import now_millis
from .exceptions import FeatureFlagClientError, FeatureFlagClientErrorCodes
from .http_util import default_headers, http_error_message, is_http_error_recoverable, make_timeout
from .requestor import HttpFeatureRequestor, parse_all_data
from .store import FEATURES, SEGMENTS, DataKind, DataStore, sort_all_data

logger = logging.getLogger(__name__)

MAX_RECONNECT_DELAY = 30.0

_PATH_PREFIXES: tuple[tuple[str, DataKind], ...] = (
    ("/flags/", FEATURES),
    ("/features/", FEATURES),
    ("/segments/", SEGMENTS),
)


def parse_path(path: str) -> tuple[DataKind, str] | None:
    """"/flags/<key>" 形式のパスを種別とキーに分解する。"""
    for prefix, kind in _PATH_PREFIXES:
        if path.startswith(prefix):
            return kind, path[len(prefix) :]
    return None


class StreamingDataSource(DataSource):
    """{stream_uri}/all の SSE ストリームを購読してストアを更新する。

    回復可能なエラーでは指数バックオフで再接続し、回復不能なエラー
    （401/403 など）では停止する。
    """

    def __init__(
        self,
        config: Config,
        requestor: HttpFeatureRequestor,
        store: DataStore,
        client: httpx.AsyncClient | None = None,
        diagnostics: DiagnosticAccumulator | None = None,
    ) -> None:
        self._config = config
        self._diagnostics = diagnostics
        self._stream_started = 0
        self._requestor = requestor
        self._store = store
        self._uri = f"{config.stream_uri.rstrip('/')}/all"
        self._headers = {**default_headers(config), "Accept": "text/event-stream"}
        self._initial_delay = config.initial_reconnect_delay
        self._client = client
        self._owns_client = client is None
        self._ready = asyncio.Event()
        self._initialized = False
        self._attempt = 0
        self._task: asyncio.Task[None] | None = None

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=make_timeout(self._config, read_timeout=self._config.http.stream_read_timeout)
        )

    async def start(self) -> asyncio.Event:
        logger.info("Starting streaming data source", extra={"uri": self._uri})
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self._ready

    def is_initialized(self) -> bool:
        return self._initialized

    def reconnect_delay(self, attempt: int) -> float:
        """再接続までの待ち時間を秒単位で計算する。"""
        base = self._initial_delay * (2**attempt)
        capped = min(base, MAX_RECONNECT_DELAY)
        return capped * (0.5 + random.random() * 0.5)

    async def _run(self) -> None:
        """接続・受信・再接続のループ。"""
        if self._client is None:
            self._client = self._make_client()
        while True:
            self._stream_started = now_millis()
            try:
                await self._consume(self._client)
                logger.info("Stream connection closed; reconnecting")
            except FeatureFlagClientError as e:
                self._record_stream_init(failed=True)
                if e.status is not None and not is_http_error_recoverable(e.status):
                    logger.error(http_error_message(e.status, "stream connection", "will retry"))
                    self._ready.set()
                    return
                logger.warning("Stream connection failed", extra={"error": str(e)})
            except httpx.HTTPError as e:
                self._record_stream_init(failed=True)
                logger.warning("Stream connection error", extra={"error": str(e)})
            delay = self.reconnect_delay(self._attempt)
            self._attempt += 1
            await asyncio.sleep(delay)

    async def _consume(self, client: httpx.AsyncClient) -> None:
        async with aconnect_sse(client, "GET", self._uri, headers=self._headers) as source:
            status = source.response.status_code
            if status >= 400:
                raise FeatureFlagClientError(
                    code=(
                        FeatureFlagClientErrorCodes.UNAUTHORIZED
                        if status in (401, 403)
                        else FeatureFlagClientErrorCodes.HTTP_ERROR
                    ),
                    message=f"stream connection: HTTP {status}",
                    status=status,
                )
            async for sse in source.aiter_sse():
                await self.handle_message(sse.event, sse.data)

    async def handle_message(self, event: str, data: str) -> None:
        """SSE メッセージ 1 件を処理する。解析できないメッセージはログに残して無視する。"""
        try:
            if event == "put":
                payload = json.loads(data)
                await self._put(parse_all_data(payload.get("data") or {}))
            elif event == "patch":
                payload = json.loads(data)
                target = parse_path(payload["path"])
                if target is not None:
                    kind, _ = target
                    await self._store.upsert(kind, kind.from_dict(payload["data"]))
            elif event == "delete":
                payload = json.loads(data)
                target = parse_path(payload["path"])
                if target is not None:
                    kind, key = target
                    await self._store.delete(kind, key, int(payload["version"]))
            elif event == "indirect/put":
                all_data, _ = await self._requestor.get_all_data()
                await self._put(all_data)
            elif event == "indirect/patch":
                await self._indirect_patch(data.strip())
            else:
                logger.warning("Unexpected stream event", extra={"event": event})
        except (ValueError, KeyError, TypeError, AttributeError, FeatureFlagClientError) as e:
            logger.error(
                "Failed to handle stream message",
                extra={"event": event, "error": str(e)},
            )

    def _record_stream_init(self, failed: bool) -> None:
        """接続開始から put 受信または失敗までを診断情報として記録する。"""
        if self._diagnostics is None or self._stream_started == 0:
            return
        now = now_millis()
        self._diagnostics.record_stream_init(
            self._stream_started, now - self._stream_started, failed
        )
        self._stream_started = 0

    async def _put(self, all_data: dict[DataKind, Any]) -> None:
        self._record_stream_init(failed=False)
        await self._store.init(sort_all_data(all_data))
        self._attempt = 0
        if not self._initialized:
            logger.info("Initialized feature flag data via stream")
            self._initialized = True
            self._ready.set()

    async def _indirect_patch(self, path: str) -> None:
        target = parse_path(path)
        if target is None:
            return
        kind, key = target
        if kind is FEATURES:
            await self._store.upsert(kind, await self._requestor.get_flag(key))
        else:
            await self._store.upsert(kind, await self._requestor.get_segment(key))

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        await self._requestor.close()
