"""EventProcessor — asyncio Task ベースのイベント集計・送信処理"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable, Coroutine
from typing import Any

from . import metrics
from .config import Config
from .diagnostics import DiagnosticAccumulator
from .event_output import EventOutputFormatter
from .event_sender import EventSender, HttpEventSender
from .events import Event, FeatureRequestEvent, IdentifyEvent, IndexEvent, now_millis
from .summarizer import EventSummarizer

logger = logging.getLogger(__name__)


class EventProcessor(ABC):
    """分析イベントの受け口。"""

    @abstractmethod
    def send_event(self, event: Event) -> None:
        """イベントを非同期処理のためにキューへ積む。ブロックしない。"""
        ...

    @abstractmethod
    async def flush(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class NullEventProcessor(EventProcessor):
    """イベントを破棄する。オフライン時やイベント送信無効時に使う。"""

    def send_event(self, event: Event) -> None:
        return None

    async def flush(self) -> None:
        return None

    async def close(self) -> None:
        return None


class _UserKeyLru:
    """容量制限付きのユーザーキー集合。古いキーから追い出す。"""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._keys: OrderedDict[str, None] = OrderedDict()

    def notice(self, key: str) -> bool:
        """キーを記録し、既に記録済みだった場合は True を返す。"""
        if key in self._keys:
            self._keys.move_to_end(key)
            return True
        self._keys[key] = None
        if len(self._keys) > self._capacity:
            self._keys.popitem(last=False)
        return False

    def clear(self) -> None:
        self._keys.clear()


class _FlushMessage:
    __slots__ = ("done",)

    def __init__(self, done: asyncio.Future[None] | None) -> None:
        self.done = done


class _DiagnosticMessage:
    __slots__ = ()


class DefaultEventProcessor(EventProcessor):
    """イベントを集計し、定期的にまとめて送信するプロセッサー。

    集計状態はワーカータスクだけが操作する。send_event はキューに積むだけで、
    キューまたはバッファが満杯なら新しいイベントを破棄する。
    diagnostics を渡すと、開始時に diagnostic-init を、その後は
    diagnostic_recording_interval ごとに diagnostic 統計イベントを送る。
    """

    def __init__(
        self,
        config: Config,
        sender: EventSender | None = None,
        clock: Callable[[], int] = now_millis,
        diagnostics: DiagnosticAccumulator | None = None,
    ) -> None:
        events = config.events
        self._config = events
        self._sender = sender or HttpEventSender(config)
        self._clock = clock
        self._diagnostics = diagnostics
        self._formatter = EventOutputFormatter(
            all_attributes_private=events.all_attributes_private,
            private_attribute_names=events.private_attribute_names,
            inline_users_in_events=events.inline_users_in_events,
        )
        self._queue: asyncio.Queue[Event | _FlushMessage | _DiagnosticMessage] = asyncio.Queue(
            maxsize=events.capacity
        )
        self._summarizer = EventSummarizer()
        self._buffer: list[Event] = []
        self._user_keys = _UserKeyLru(events.user_keys_capacity)
        self._last_known_server_time = 0
        self._dropped_events = 0
        self._deduplicated_users = 0
        self._queue_full_warned = False
        self._buffer_full_warned = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._worker: asyncio.Task[None] | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._diagnostic_task: asyncio.Task[None] | None = None
        self._deliveries: set[asyncio.Task[None]] = set()
        self._closed = False

    async def start(self) -> None:
        """ワーカータスクと定期フラッシュタスクを開始する。"""
        if self._worker is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._worker = asyncio.create_task(self._run())
        self._flush_task = asyncio.create_task(self._flush_loop())
        if self._diagnostics is not None:
            self._start_delivery(self._deliver_diagnostic(self._diagnostics.init_event()))
            self._diagnostic_task = asyncio.create_task(self._diagnostic_loop())

    def send_event(self, event: Event) -> None:
        if self._closed:
            return
        loop = self._loop
        if loop is not None and not _in_loop(loop):
            loop.call_soon_threadsafe(self._enqueue, event)
        else:
            self._enqueue(event)

    def post_diagnostic(self) -> None:
        """診断統計イベントの送信を要求する。"""
        if self._closed or self._diagnostics is None:
            return
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(_DiagnosticMessage())

    async def flush(self) -> None:
        """バッファ済みのイベントを送信し、送信中のものを含めて完了（再送を含む）を待つ。"""
        if self._closed:
            return
        await self.start()
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        await self._queue.put(_FlushMessage(done))
        await done

    async def close(self) -> None:
        """最終フラッシュを行ってからタスクを停止し、送信クライアントを閉じる。"""
        if self._closed:
            return
        await self.flush()
        self._closed = True
        for task in (self._diagnostic_task, self._flush_task, self._worker):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._worker = None
        self._flush_task = None
        self._diagnostic_task = None
        if self._deliveries:
            await asyncio.gather(*self._deliveries, return_exceptions=True)
        await self._sender.close()

    def _enqueue(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
            self._queue_full_warned = False
        except asyncio.QueueFull:
            self._dropped("Events are being produced faster than they can be processed")

    def _dropped(self, message: str) -> None:
        self._dropped_events += 1
        metrics.events_dropped_total.add(1)
        if not self._queue_full_warned:
            self._queue_full_warned = True
            logger.warning(message, extra={"capacity": self._config.capacity})

    async def _run(self) -> None:
        """キューを消費するワーカーループ。"""
        while True:
            message = await self._queue.get()
            try:
                if isinstance(message, _FlushMessage):
                    self._trigger_flush(message.done)
                elif isinstance(message, _DiagnosticMessage):
                    self._send_diagnostic_stats()
                else:
                    self._process_event(message)
            except Exception as e:
                logger.error("Unexpected error in event processor", extra={"error": str(e)})
                if isinstance(message, _FlushMessage) and message.done and not message.done.done():
                    message.done.set_result(None)
            finally:
                self._queue.task_done()

    async def _flush_loop(self) -> None:
        """flush_interval ごとにフラッシュを要求する。"""
        while True:
            await asyncio.sleep(self._config.flush_interval)
            with contextlib.suppress(asyncio.QueueFull):
                self._queue.put_nowait(_FlushMessage(None))

    async def _diagnostic_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.diagnostic_recording_interval)
            self.post_diagnostic()

    def _process_event(self, event: Event) -> None:
        add_full_event = True
        debug_event: FeatureRequestEvent | None = None

        if isinstance(event, FeatureRequestEvent):
            self._summarizer.summarize_event(event)
            add_full_event = event.track_events
            if self._should_debug(event):
                debug_event = event.to_debug()

        user = event.user
        if user is not None and user.key is not None:
            if isinstance(event, IdentifyEvent):
                self._user_keys.notice(user.key)
            elif not self._config.inline_users_in_events:
                if self._user_keys.notice(user.key):
                    self._deduplicated_users += 1
                else:
                    self._add_to_buffer(IndexEvent(creation_date=event.creation_date, user=user))

        if add_full_event:
            self._add_to_buffer(event)
        if debug_event is not None:
            self._add_to_buffer(debug_event)

    def _should_debug(self, event: FeatureRequestEvent) -> bool:
        until = event.debug_events_until_date
        if until is None:
            return False
        return until > self._last_known_server_time and until > self._clock()

    def _add_to_buffer(self, event: Event) -> None:
        if len(self._buffer) >= self._config.capacity:
            if not self._buffer_full_warned:
                self._buffer_full_warned = True
                logger.warning(
                    "Exceeded event buffer capacity; newer events will be dropped",
                    extra={"capacity": self._config.capacity},
                )
            self._dropped_events += 1
            metrics.events_dropped_total.add(1)
            return
        self._buffer.append(event)

    def _trigger_flush(self, done: asyncio.Future[None] | None) -> None:
        if self._buffer or not self._summarizer.is_empty():
            events = self._buffer
            summary = self._summarizer.snapshot()
            self._buffer = []
            self._buffer_full_warned = False
            self._user_keys.clear()
            output = self._formatter.make_output_events(events, summary)
            if self._diagnostics is not None:
                self._diagnostics.record_events_in_batch(len(output))
            self._start_delivery(self._deliver(json.dumps(output), len(output)))
        if done is not None:
            self._resolve_when_delivered(done)

    def _start_delivery(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    def _resolve_when_delivered(self, done: asyncio.Future[None]) -> None:
        """この時点で送信中のものがすべて終わったら done を完了させる。"""
        pending = list(self._deliveries)
        if not pending:
            if not done.done():
                done.set_result(None)
            return

        def finished(_: asyncio.Future[list[Any]]) -> None:
            if not done.done():
                done.set_result(None)

        asyncio.gather(*pending, return_exceptions=True).add_done_callback(finished)

    def _send_diagnostic_stats(self) -> None:
        if self._diagnostics is None:
            return
        event = self._diagnostics.create_event_and_reset(
            self._dropped_events, self._deduplicated_users
        )
        self._dropped_events = 0
        self._deduplicated_users = 0
        self._start_delivery(self._deliver_diagnostic(event))

    async def _deliver(self, payload: str, count: int) -> None:
        try:
            result = await self._sender.send_event_data(payload, count)
        except Exception as e:
            logger.error("Unexpected error delivering events", extra={"error": str(e)})
            return
        if result.time_from_server is not None:
            self._last_known_server_time = result.time_from_server

    async def _deliver_diagnostic(self, event: dict[str, Any]) -> None:
        try:
            await self._sender.send_diagnostic_event(json.dumps(event))
        except Exception as e:
            logger.error(
                "Unexpected error delivering diagnostic event",
                extra={"kind": event.get("kind"), "error": str(e)},
            )


def _in_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False
