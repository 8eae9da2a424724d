"""HTTP 共通ユーティリティ"""

from __future__ import annotations

import httpx

from .config import Config


def is_http_error_recoverable(status: int) -> bool:
    """再試行で回復しうるステータスなら True。

    400 / 408 / 429 と 4xx 以外は回復可能とみなす。
    """
    if 400 <= status < 500:
        return status in (400, 408, 429)
    return True


def http_error_message(status: int, context: str, recoverable_message: str) -> str:
    """ログ用のエラーメッセージを組み立てる。"""
    if status in (401, 403):
        detail = " (invalid SDK key)"
    else:
        detail = ""
    action = recoverable_message if is_http_error_recoverable(status) else "giving up permanently"
    return f"Received HTTP error {status}{detail} for {context} - {action}"


def default_headers(config: Config) -> dict[str, str]:
    return {
        "Authorization": config.sdk_key,
        "User-Agent": config.http.user_agent,
    }


def make_timeout(config: Config, read_timeout: float | None = None) -> httpx.Timeout:
    """接続・読み取りタイムアウトを設定した httpx.Timeout を返す。"""
    read = read_timeout if read_timeout is not None else config.http.read_timeout
    return httpx.Timeout(
        connect=config.http.connect_timeout,
        read=read,
        write=config.http.read_timeout,
        pool=config.http.connect_timeout,
    )
