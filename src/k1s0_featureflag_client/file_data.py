"""FileDataSource — ローカルの JSON / YAML ファイルからフラグを読み込む"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml

from .data_source import DataSource
from .exceptions import FeatureFlagClientError, FeatureFlagClientErrorCodes
from .models import FeatureFlag, Segment
from .store import FEATURES, SEGMENTS, DataKind, DataStore, Item, sort_all_data

logger = logging.getLogger(__name__)


def flag_from_value(key: str, value: Any) -> FeatureFlag:
    """常に value を返す単一バリエーションのフラグを生成する。"""
    return FeatureFlag.from_dict(
        {"key": key, "on": True, "variations": [value], "fallthrough": {"variation": 0}}
    )


def _read_file(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FeatureFlagClientError(
            code=FeatureFlagClientErrorCodes.FILE_DATA_ERROR,
            message=f"Failed to read flag data file: {path}",
            cause=e,
        ) from e
    try:
        # JSON は YAML のサブセットなのでどちらも safe_load で読める
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise FeatureFlagClientError(
            code=FeatureFlagClientErrorCodes.FILE_DATA_ERROR,
            message=f"Failed to parse flag data file: {path}",
            cause=e,
        ) from e
    if not isinstance(data, dict):
        raise FeatureFlagClientError(
            code=FeatureFlagClientErrorCodes.FILE_DATA_ERROR,
            message=f"Flag data file must contain an object: {path}",
        )
    return data


def load_files(paths: Iterable[Path]) -> dict[DataKind, dict[str, Item]]:
    """全ファイルを読み込んでマージする。ファイル間でキーが重複するとエラー。"""
    flags: dict[str, Item] = {}
    segments: dict[str, Item] = {}

    def add(items: dict[str, Item], item: Item, path: Path) -> None:
        if item.key in items:
            raise FeatureFlagClientError(
                code=FeatureFlagClientErrorCodes.FILE_DATA_ERROR,
                message=f"Duplicate key '{item.key}' in {path}",
            )
        items[item.key] = item

    for path in paths:
        data = _read_file(path)
        try:
            for key, flag in (data.get("flags") or {}).items():
                add(flags, FeatureFlag.from_dict({"key": key, **flag}), path)
            for key, value in (data.get("flagValues") or {}).items():
                add(flags, flag_from_value(key, value), path)
            for key, segment in (data.get("segments") or {}).items():
                add(segments, Segment.from_dict({"key": key, **segment}), path)
        except FeatureFlagClientError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise FeatureFlagClientError(
                code=FeatureFlagClientErrorCodes.FILE_DATA_ERROR,
                message=f"Invalid flag data in {path}: {e}",
                cause=e,
            ) from e
    return {SEGMENTS: segments, FEATURES: flags}


class FileDataSource(DataSource):
    """ファイルから読み込んだデータでストアを初期化する。"""

    def __init__(self, store: DataStore, paths: Iterable[str | Path]) -> None:
        self._store = store
        self._paths = [Path(p) for p in paths]
        self._ready = asyncio.Event()
        self._initialized = False

    async def start(self) -> asyncio.Event:
        await self.reload()
        self._ready.set()
        return self._ready

    async def reload(self) -> bool:
        """ファイルを再読み込みする。失敗時はストアを変更せず False を返す。"""
        try:
            all_data = load_files(self._paths)
        except FeatureFlagClientError as e:
            logger.error("Failed to load flag data files", extra={"error": str(e)})
            return False
        await self._store.init(sort_all_data(all_data))
        self._initialized = True
        return True

    def is_initialized(self) -> bool:
        return self._initialized
