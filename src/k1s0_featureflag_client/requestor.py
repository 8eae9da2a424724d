"""フラグデータ取得用 HTTP クライアント"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import Config
from .exceptions import FeatureFlagClientError, FeatureFlagClientErrorCodes
from .http_util import default_headers, make_timeout
from .models import FeatureFlag, Segment
from .store import FEATURES, SEGMENTS, DataKind, Item

logger = logging.getLogger(__name__)


def parse_all_data(data: dict[str, Any]) -> dict[DataKind, dict[str, Item]]:
    """{"flags": {...}, "segments": {...}} 形式の全データを解析する。"""
    try:
        flags = {k: FeatureFlag.from_dict(v) for k, v in (data.get("flags") or {}).items()}
        segments = {k: Segment.from_dict(v) for k, v in (data.get("segments") or {}).items()}
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise FeatureFlagClientError(
            code=FeatureFlagClientErrorCodes.INVALID_DATA,
            message=f"Invalid flag data: {e}",
            cause=e,
        ) from e
    return {SEGMENTS: segments, FEATURES: flags}


class HttpFeatureRequestor:
    """httpx を使ったフラグデータ取得クライアント。ETag によるキャッシュを行う。"""

    def __init__(self, config: Config, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._base_uri = config.base_uri.rstrip("/")
        self._headers = default_headers(config)
        self._client = client
        self._owns_client = client is None
        self._etags: dict[str, tuple[str, Any]] = {}

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=make_timeout(self._config))

    def _handle_error(self, resp: httpx.Response, context: str) -> None:
        if resp.status_code in (401, 403):
            raise FeatureFlagClientError(
                code=FeatureFlagClientErrorCodes.UNAUTHORIZED,
                message=f"{context}: HTTP {resp.status_code}: invalid SDK key",
                status=resp.status_code,
            )
        if resp.status_code >= 400:
            raise FeatureFlagClientError(
                code=FeatureFlagClientErrorCodes.HTTP_ERROR,
                message=f"{context}: HTTP {resp.status_code}: {resp.text}",
                status=resp.status_code,
            )

    async def _get(self, path: str, use_etag: bool) -> tuple[Any, bool]:
        """JSON を取得する。2 番目の値は 304 でキャッシュを返した場合に True。"""
        if self._client is None:
            self._client = self._make_client()
        url = f"{self._base_uri}{path}"
        headers = dict(self._headers)
        cached = self._etags.get(url) if use_etag else None
        if cached is not None:
            headers["If-None-Match"] = cached[0]
        try:
            resp = await self._client.get(url, headers=headers)
            if resp.status_code == 304 and cached is not None:
                return cached[1], True
            self._handle_error(resp, f"GET {path}")
            data = resp.json()
        except FeatureFlagClientError:
            raise
        except Exception as e:
            raise FeatureFlagClientError(
                code=FeatureFlagClientErrorCodes.HTTP_ERROR,
                message=f"Failed to fetch {path}: {e}",
                cause=e,
            ) from e
        etag = resp.headers.get("ETag")
        if use_etag and etag:
            self._etags[url] = (etag, data)
        return data, False

    async def get_all_data(self) -> tuple[dict[DataKind, dict[str, Item]], bool]:
        """全フラグ・セグメントを取得する。2 番目の値は変更が無かった場合に True。"""
        data, not_modified = await self._get("/sdk/latest-all", use_etag=True)
        return parse_all_data(data), not_modified

    async def get_flag(self, key: str) -> FeatureFlag:
        data, _ = await self._get(f"/sdk/latest-flags/{key}", use_etag=False)
        return FeatureFlag.from_dict(data)

    async def get_segment(self, key: str) -> Segment:
        data, _ = await self._get(f"/sdk/latest-segments/{key}", use_etag=False)
        return Segment.from_dict(data)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
