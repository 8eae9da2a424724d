"""診断イベント — SDK 構成と送信統計の定期レポート"""

from __future__ import annotations

import platform
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .config import DEFAULT_URI, Config
from .events import now_millis

SDK_NAME = "k1s0-featureflag-client"
SDK_VERSION = "0.1.0"

_OS_NAMES = {"Darwin": "MacOS", "Linux": "Linux", "Windows": "Windows"}


@dataclass(frozen=True)
class DiagnosticId:
    """診断イベントの送信元 ID。SDK キーは末尾 6 文字だけを含める。"""

    diagnostic_id: str
    sdk_key_suffix: str

    @classmethod
    def create(cls, sdk_key: str) -> DiagnosticId:
        return cls(diagnostic_id=str(uuid.uuid4()), sdk_key_suffix=sdk_key[-6:])

    def to_dict(self) -> dict[str, str]:
        return {"diagnosticId": self.diagnostic_id, "sdkKeySuffix": self.sdk_key_suffix}


@dataclass(frozen=True)
class StreamInit:
    """ストリーム接続の試行 1 回分。"""

    timestamp: int
    duration_millis: int
    failed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "durationMillis": self.duration_millis,
            "failed": self.failed,
        }


def _millis(seconds: float) -> int:
    return int(seconds * 1000)


def describe_configuration(config: Config, data_store_type: str = "memory") -> dict[str, Any]:
    """diagnostic-init に載せる構成情報。URI や SDK キーそのものは含めない。"""
    events = config.events
    return {
        "customBaseURI": config.base_uri != DEFAULT_URI,
        "customStreamURI": config.stream_uri != DEFAULT_URI,
        "customEventsURI": config.events_uri != DEFAULT_URI,
        "connectTimeoutMillis": _millis(config.http.connect_timeout),
        "socketTimeoutMillis": _millis(config.http.read_timeout),
        "offline": config.offline,
        "startWaitMillis": _millis(config.start_wait),
        "streamingDisabled": not config.stream,
        "usingRelayDaemon": config.use_external_updates_only,
        "pollingIntervalMillis": _millis(config.poll_interval),
        "reconnectTimeMillis": _millis(config.initial_reconnect_delay),
        "eventsCapacity": events.capacity,
        "eventsFlushIntervalMillis": _millis(events.flush_interval),
        "userKeysCapacity": events.user_keys_capacity,
        "inlineUsersInEvents": events.inline_users_in_events,
        "allAttributesPrivate": events.all_attributes_private,
        "diagnosticRecordingIntervalMillis": _millis(events.diagnostic_recording_interval),
        "dataStoreType": data_store_type,
    }


def describe_platform() -> dict[str, Any]:
    system = platform.system()
    return {
        "name": "Python",
        "osArch": platform.machine(),
        "osName": _OS_NAMES.get(system, system),
        "osVersion": platform.release(),
        "pythonVersion": platform.python_version(),
        "pythonImplementation": platform.python_implementation(),
    }


class DiagnosticAccumulator:
    """診断統計を蓄積し、diagnostic / diagnostic-init イベントを組み立てる。

    イベントループ上のタスク（イベントプロセッサーとストリーミング更新元）からのみ操作する。
    破棄イベント数と重複ユーザー数はプロセッサー側で数え、
    create_event_and_reset に渡す。
    """

    def __init__(
        self,
        config: Config,
        data_store_type: str = "memory",
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self.diagnostic_id = DiagnosticId.create(config.sdk_key)
        self._config = config
        self._data_store_type = data_store_type
        self._clock = clock
        self.creation_date = clock()
        self.data_since_date = self.creation_date
        self._events_in_last_batch = 0
        self._stream_inits: list[StreamInit] = []

    def init_event(self) -> dict[str, Any]:
        return {
            "kind": "diagnostic-init",
            "id": self.diagnostic_id.to_dict(),
            "creationDate": self.creation_date,
            "sdk": {"name": SDK_NAME, "version": SDK_VERSION},
            "configuration": describe_configuration(self._config, self._data_store_type),
            "platform": describe_platform(),
        }

    def record_stream_init(self, timestamp: int, duration_millis: int, failed: bool) -> None:
        self._stream_inits.append(StreamInit(timestamp, duration_millis, failed))

    def record_events_in_batch(self, count: int) -> None:
        self._events_in_last_batch = count

    def create_event_and_reset(
        self, dropped_events: int, deduplicated_users: int
    ) -> dict[str, Any]:
        """統計イベントを作り、次の集計期間に向けて状態をリセットする。"""
        now = self._clock()
        event = {
            "kind": "diagnostic",
            "id": self.diagnostic_id.to_dict(),
            "creationDate": now,
            "dataSinceDate": self.data_since_date,
            "droppedEvents": dropped_events,
            "deduplicatedUsers": deduplicated_users,
            "eventsInLastBatch": self._events_in_last_batch,
            "streamInits": [s.to_dict() for s in self._stream_inits],
        }
        self._stream_inits = []
        self._events_in_last_batch = 0
        self.data_since_date = now
        return event
