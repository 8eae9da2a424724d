"""DataSource 抽象"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod


class DataSource(ABC):
    """フラグデータをストアへ書き込む更新元。"""

    @abstractmethod
    async def start(self) -> asyncio.Event:
        """更新を開始する。

        Returns:
            初期化が完了するか、回復不能な失敗で停止したときにセットされる Event
        """
        ...

    @abstractmethod
    def is_initialized(self) -> bool: ...

    async def close(self) -> None:
        return None


class NullDataSource(DataSource):
    """何もしない更新元。オフラインモードや外部更新のみのモードで使う。"""

    async def start(self) -> asyncio.Event:
        ready = asyncio.Event()
        ready.set()
        return ready

    def is_initialized(self) -> bool:
        return True
