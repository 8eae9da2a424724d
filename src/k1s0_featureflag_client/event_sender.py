"""分析イベントの HTTP 送信"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.utils import parsedate_to_datetime

import httpx

from . import metrics
from .config import Config
from .http_util import default_headers, make_timeout

logger = logging.getLogger(__name__)

EVENT_SCHEMA_VERSION = "3"


@dataclass(frozen=True)
class EventSenderResult:
    """送信結果。time_from_server はレスポンスの Date ヘッダー（エポックミリ秒）。"""

    success: bool
    time_from_server: int | None = None


class EventSender(ABC):
    """イベントペイロードの送信先。"""

    @abstractmethod
    async def send_event_data(self, data: str, event_count: int) -> EventSenderResult: ...

    @abstractmethod
    async def send_diagnostic_event(self, data: str) -> EventSenderResult:
        """診断イベント 1 件（JSON オブジェクト）を送信する。"""
        ...

    async def close(self) -> None:
        return None


def _is_delivery_recoverable(status: int) -> bool:
    """429 と 5xx のみ再送する。それ以外の 4xx は回復不能。"""
    return status >= 500 or status == 429


def _parse_server_time(resp: httpx.Response) -> int | None:
    date = resp.headers.get("Date")
    if not date:
        return None
    try:
        return int(parsedate_to_datetime(date).timestamp() * 1000)
    except (TypeError, ValueError):
        return None


class HttpEventSender(EventSender):
    """httpx を使ったイベント送信。回復可能なエラーは同じペイロード ID で 1 回だけ再送する。

    分析イベントは {events_uri}/bulk、診断イベントは {events_uri}/diagnostic に送る。
    """

    def __init__(self, config: Config, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        base = config.events_uri.rstrip("/")
        self._bulk_uri = f"{base}/bulk"
        self._diagnostic_uri = f"{base}/diagnostic"
        self._retry_delay = config.events.retry_delay
        self._headers = {**default_headers(config), "Content-Type": "application/json"}
        self._client = client
        self._owns_client = client is None

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=make_timeout(self._config))

    async def send_event_data(self, data: str, event_count: int) -> EventSenderResult:
        payload_id = str(uuid.uuid4())
        headers = {
            **self._headers,
            "X-Event-Schema": EVENT_SCHEMA_VERSION,
            "X-Event-Payload-Id": payload_id,
        }
        return await self._post(
            self._bulk_uri,
            data,
            headers,
            {"kind": "analytics", "event_count": event_count, "payload_id": payload_id},
        )

    async def send_diagnostic_event(self, data: str) -> EventSenderResult:
        return await self._post(self._diagnostic_uri, data, self._headers, {"kind": "diagnostic"})

    async def _post(
        self, uri: str, data: str, headers: dict[str, str], context: dict[str, object]
    ) -> EventSenderResult:
        if self._client is None:
            self._client = self._make_client()
        time_from_server: int | None = None

        for attempt in range(2):
            if attempt > 0:
                logger.warning(
                    "Will retry posting events",
                    extra={**context, "retry_delay": self._retry_delay},
                )
                await asyncio.sleep(self._retry_delay)
            try:
                resp = await self._client.post(uri, content=data, headers=headers)
            except httpx.HTTPError as e:
                logger.warning(
                    "Failed to post events",
                    extra={**context, "uri": uri, "error": str(e), "attempt": attempt + 1},
                )
                continue

            time_from_server = _parse_server_time(resp) or time_from_server
            if resp.status_code < 300:
                logger.debug("Posted events", extra={**context, "status": resp.status_code})
                metrics.event_deliveries_total.add(
                    1, {"result": "success", "kind": str(context["kind"])}
                )
                return EventSenderResult(True, time_from_server)
            if not _is_delivery_recoverable(resp.status_code):
                logger.error(
                    "Received unrecoverable HTTP error posting events; discarding payload",
                    extra={**context, "status": resp.status_code},
                )
                break
            logger.warning(
                "Received HTTP error posting events",
                extra={**context, "status": resp.status_code, "attempt": attempt + 1},
            )

        metrics.event_deliveries_total.add(1, {"result": "failure", "kind": str(context["kind"])})
        return EventSenderResult(False, time_from_server)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
