"""クライアント設定（pydantic BaseModel）と YAML ローダー"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

import httpx
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .caching import DataStoreCacheConfig, StaleValuesPolicy
from .exceptions import FeatureFlagClientError, FeatureFlagClientErrorCodes

DEFAULT_URI = "http://featureflag-server:8080"

_DATA_FILE_SUFFIXES = (".json", ".yaml", ".yml")


class EventsSection(BaseModel):
    """分析イベント設定。"""

    enabled: bool = True
    capacity: int = Field(default=10000, ge=1)
    flush_interval: float = Field(default=5.0, gt=0)
    user_keys_capacity: int = Field(default=1000, ge=1)
    inline_users_in_events: bool = False
    all_attributes_private: bool = False
    private_attribute_names: list[str] = Field(default_factory=list)
    retry_delay: float = Field(default=1.0, ge=0)
    diagnostic_opt_out: bool = False
    diagnostic_recording_interval: float = Field(default=900.0, ge=60)


class HttpSection(BaseModel):
    """HTTP 接続設定。"""

    connect_timeout: float = Field(default=2.0, gt=0)
    read_timeout: float = Field(default=10.0, gt=0)
    stream_read_timeout: float = Field(default=300.0, gt=0)
    user_agent: str = "k1s0-featureflag-client/0.1.0"


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class DataStoreCacheSection(BaseModel):
    """永続ストアのキャッシュ設定。ttl_seconds が None なら無期限。"""

    ttl_seconds: float | None = 15.0
    stale_values_policy: Literal["evict", "refresh", "refresh_async"] = "evict"

    def to_cache_config(self) -> DataStoreCacheConfig:
        ttl = None if self.ttl_seconds is None else timedelta(seconds=self.ttl_seconds)
        return DataStoreCacheConfig(
            ttl=ttl, stale_values_policy=StaleValuesPolicy(self.stale_values_policy)
        )


class Config(BaseModel):
    """フィーチャーフラグクライアント設定全体。"""

    sdk_key: str = Field(min_length=1)
    base_uri: str = DEFAULT_URI
    stream_uri: str = DEFAULT_URI
    events_uri: str = DEFAULT_URI
    offline: bool = False
    stream: bool = True
    use_external_updates_only: bool = False
    start_wait: float = Field(default=5.0, ge=0)
    poll_interval: float = Field(default=30.0, ge=30)
    initial_reconnect_delay: float = Field(default=1.0, ge=0)
    file_paths: list[str] = Field(default_factory=list)
    events: EventsSection = Field(default_factory=EventsSection)
    http: HttpSection = Field(default_factory=HttpSection)
    log: LogSection = Field(default_factory=LogSection)
    cache: DataStoreCacheSection = Field(default_factory=DataStoreCacheSection)

    @field_validator("base_uri", "stream_uri", "events_uri")
    @classmethod
    def validate_service_uri(cls, v: str) -> str:
        """http(s) の絶対 URI に限定し、末尾の "/" を取り除く。"""
        try:
            url = httpx.URL(v)
        except httpx.InvalidURL as e:
            raise ValueError(f"invalid service URI: {v}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"service URI must be an absolute http(s) URI: {v}")
        return v.rstrip("/")

    @field_validator("file_paths")
    @classmethod
    def validate_file_paths(cls, v: list[str]) -> list[str]:
        for path in v:
            if Path(path).suffix.lower() not in _DATA_FILE_SUFFIXES:
                raise ValueError(f"flag data file must be JSON or YAML: {path}")
        return v


def _config_error(message: str, cause: Exception) -> FeatureFlagClientError:
    return FeatureFlagClientError(
        code=FeatureFlagClientErrorCodes.CONFIG_ERROR, message=message, cause=cause
    )


def _load_mapping(path: Path) -> dict[str, Any]:
    """YAML ファイルを読み込む。ルートはマッピングでなければならない。"""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise _config_error(f"Failed to read config file: {path}", e) from e
    except yaml.YAMLError as e:
        raise _config_error(f"Failed to parse YAML: {path}", e) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise _config_error(
            f"Config root must be a mapping: {path}", TypeError(type(data).__name__)
        )
    return data


def overlay_sections(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """環境別設定を重ねる。events / http などのセクションはキー単位で上書きする。"""
    merged = dict(base)
    for key, value in override.items():
        section = merged.get(key)
        if isinstance(section, dict) and isinstance(value, dict):
            merged[key] = {**section, **value}
        else:
            merged[key] = value
    return merged


def _resolve_file_paths(data: dict[str, Any], origin: Path) -> None:
    paths = data.get("file_paths")
    if isinstance(paths, list):
        data["file_paths"] = [
            str(origin.parent / p) if isinstance(p, str) and not Path(p).is_absolute() else p
            for p in paths
        ]


def load_config(base_path: Path, env_path: Path | None = None) -> Config:
    """設定ファイルを読み込んで Config を返す。

    base_path: ベース設定ファイルパス（必須）
    env_path: 環境別設定ファイルパス（オプション）。存在する場合はベースに重ねる。
    file_paths の相対パスは、それを記述した設定ファイルのディレクトリを起点に解決する。
    """
    data = _load_mapping(base_path)
    _resolve_file_paths(data, base_path)
    if env_path is not None and env_path.exists():
        override = _load_mapping(env_path)
        _resolve_file_paths(override, env_path)
        data = overlay_sections(data, override)
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise _config_error(f"Config validation failed: {e}", e) from e
