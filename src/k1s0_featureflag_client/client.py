"""FeatureFlagClient — フラグ評価クライアント"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from . import metrics
from .config import Config
from .data_source import DataSource, NullDataSource
from .diagnostics import DiagnosticAccumulator
from .evaluator import Evaluator
from .event_processor import DefaultEventProcessor, EventProcessor, NullEventProcessor
from .events import EventFactory
from .file_data import FileDataSource
from .flags_state import FeatureFlagsState
from .models import FeatureFlag, Segment
from .polling import PollingDataSource
from .reason import ErrorKind, EvaluationDetail
from .requestor import HttpFeatureRequestor
from .store import FEATURES, SEGMENTS, DataStore, InMemoryDataStore
from .streaming import StreamingDataSource
from .user import User
from .value import FlagValue

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FeatureFlagClient:
    """フィーチャーフラグ評価クライアント。

    評価系メソッドは例外を送出せず、失敗時は既定値と ERROR 理由を返す。

    Example:
        async with FeatureFlagClient(config) as client:
            enabled = await client.bool_variation("new-ui", User(key="u1"), False)
    """

    def __init__(
        self,
        config: Config,
        *,
        store: DataStore | None = None,
        data_source: DataSource | None = None,
        event_processor: EventProcessor | None = None,
    ) -> None:
        self._config = config
        self._store = store or InMemoryDataStore()
        self._diagnostics: DiagnosticAccumulator | None = None
        if event_processor is None:
            if config.offline or not config.events.enabled:
                event_processor = NullEventProcessor()
            else:
                if not config.events.diagnostic_opt_out:
                    self._diagnostics = DiagnosticAccumulator(
                        config, _data_store_type(self._store)
                    )
                event_processor = DefaultEventProcessor(config, diagnostics=self._diagnostics)
        self._event_processor = event_processor
        self._data_source = data_source or self._make_data_source()
        self._evaluator = Evaluator(self._get_flag, self._get_segment)
        self._event_factory = EventFactory(with_reasons=False)
        self._event_factory_with_reasons = EventFactory(with_reasons=True)

    def _make_data_source(self) -> DataSource:
        config = self._config
        if config.offline:
            logger.info("Starting feature flag client in offline mode")
            return NullDataSource()
        if config.use_external_updates_only:
            logger.info("Feature flag data will be updated externally")
            return NullDataSource()
        if config.file_paths:
            return FileDataSource(self._store, config.file_paths)
        requestor = HttpFeatureRequestor(config)
        if config.stream:
            return StreamingDataSource(
                config, requestor, self._store, diagnostics=self._diagnostics
            )
        return PollingDataSource(requestor, self._store, config.poll_interval)

    async def start(self) -> None:
        """更新元とイベント処理を開始し、最大 start_wait 秒だけ初期化を待つ。"""
        if isinstance(self._event_processor, DefaultEventProcessor):
            await self._event_processor.start()
        ready = await self._data_source.start()
        if self._config.start_wait > 0:
            logger.info(
                "Waiting for feature flag client initialization",
                extra={"start_wait": self._config.start_wait},
            )
            try:
                await asyncio.wait_for(ready.wait(), timeout=self._config.start_wait)
            except TimeoutError:
                logger.error("Timeout encountered waiting for feature flag client initialization")
        if not self._data_source.is_initialized():
            logger.warning("Feature flag client was not successfully initialized")

    async def close(self) -> None:
        """更新元を停止し、残りのイベントを送信してからストアを閉じる。"""
        logger.info("Closing feature flag client")
        await self._data_source.close()
        await self._event_processor.close()
        await self._store.close()

    async def __aenter__(self) -> FeatureFlagClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def is_initialized(self) -> bool:
        return self._data_source.is_initialized()

    def is_offline(self) -> bool:
        return self._config.offline

    async def flush(self) -> None:
        """バッファ済みの分析イベントを送信する。"""
        await self._event_processor.flush()

    def identify(self, user: User | None) -> None:
        """ユーザー情報を分析イベントとして登録する。"""
        if user is None or user.key is None:
            logger.warning("identify called with null user or null user key")
            return
        self._event_processor.send_event(self._event_factory.new_identify_event(user))

    def track(
        self,
        event_name: str,
        user: User | None,
        data: Any = None,
        metric_value: float | None = None,
    ) -> None:
        """任意のカスタムイベントを記録する。"""
        if user is None or user.key is None:
            logger.warning("track called with null user or null user key")
            return
        self._event_processor.send_event(
            self._event_factory.new_custom_event(
                event_name,
                user,
                FlagValue.of(data) if data is not None else None,
                metric_value,
            )
        )

    def secure_mode_hash(self, user: User | None) -> str | None:
        """ユーザーキーの HMAC-SHA256（SDK キーで署名）を返す。"""
        if user is None or user.key is None:
            return None
        return hmac.new(
            self._config.sdk_key.encode(), user.key.encode(), hashlib.sha256
        ).hexdigest()

    async def variation(self, key: str, user: User | None, default: Any) -> Any:
        """任意の JSON 値としてフラグを評価する。"""
        detail = await self._evaluate(key, user, FlagValue.of(default), None, False)
        return detail.value.to_json()

    async def variation_detail(
        self, key: str, user: User | None, default: Any
    ) -> EvaluationDetail[Any]:
        detail = await self._evaluate(key, user, FlagValue.of(default), None, True)
        return EvaluationDetail(detail.value.to_json(), detail.variation_index, detail.reason)

    async def bool_variation(self, key: str, user: User | None, default: bool) -> bool:
        detail = await self._typed(key, user, default, FlagValue.is_bool, FlagValue.bool_value, False)
        return detail.value

    async def bool_variation_detail(
        self, key: str, user: User | None, default: bool
    ) -> EvaluationDetail[bool]:
        return await self._typed(key, user, default, FlagValue.is_bool, FlagValue.bool_value, True)

    async def int_variation(self, key: str, user: User | None, default: int) -> int:
        detail = await self._typed(key, user, default, FlagValue.is_number, FlagValue.int_value, False)
        return detail.value

    async def int_variation_detail(
        self, key: str, user: User | None, default: int
    ) -> EvaluationDetail[int]:
        return await self._typed(key, user, default, FlagValue.is_number, FlagValue.int_value, True)

    async def float_variation(self, key: str, user: User | None, default: float) -> float:
        detail = await self._typed(key, user, default, FlagValue.is_number, FlagValue.float_value, False)
        return detail.value

    async def float_variation_detail(
        self, key: str, user: User | None, default: float
    ) -> EvaluationDetail[float]:
        return await self._typed(key, user, default, FlagValue.is_number, FlagValue.float_value, True)

    async def string_variation(self, key: str, user: User | None, default: str | None) -> str | None:
        detail = await self._typed(key, user, default, FlagValue.is_string, FlagValue.string_value, False)
        return detail.value

    async def string_variation_detail(
        self, key: str, user: User | None, default: str | None
    ) -> EvaluationDetail[str | None]:
        return await self._typed(
            key, user, default, FlagValue.is_string, FlagValue.string_value, True
        )

    async def json_variation(self, key: str, user: User | None, default: Any) -> FlagValue:
        """任意型の FlagValue としてフラグを評価する。"""
        detail = await self._evaluate(key, user, FlagValue.of(default), None, False)
        return detail.value

    async def json_variation_detail(
        self, key: str, user: User | None, default: Any
    ) -> EvaluationDetail[FlagValue]:
        return await self._evaluate(key, user, FlagValue.of(default), None, True)

    async def all_flags_state(
        self,
        user: User | None,
        client_side_only: bool = False,
        with_reasons: bool = False,
        details_only_for_tracked_flags: bool = False,
    ) -> FeatureFlagsState:
        """全フラグを評価した結果を返す。分析イベントは生成しない。"""
        if self._config.offline:
            logger.debug("all_flags_state called in offline mode")
            return FeatureFlagsState(valid=False)
        if not self.is_initialized():
            if await self._store.initialized():
                logger.warning("all_flags_state called before client initialized; using last known values")
            else:
                logger.warning("all_flags_state called before client initialized; data store unavailable")
                return FeatureFlagsState(valid=False)
        if user is None or user.key is None:
            logger.warning("all_flags_state called with null user or null user key")
            return FeatureFlagsState(valid=False)

        state = FeatureFlagsState()
        try:
            flags = await self._store.all(FEATURES)
        except Exception as e:
            logger.error("Failed to read flags from data store", extra={"error": str(e)})
            return FeatureFlagsState(valid=False)
        for flag in flags.values():
            if not isinstance(flag, FeatureFlag):
                continue
            if client_side_only and not flag.client_side:
                continue
            try:
                detail = (await self._evaluator.evaluate(flag, user, None)).detail
            except Exception as e:
                logger.error(
                    "Exception evaluating flag in all_flags_state",
                    extra={"flag_key": flag.key, "error": str(e)},
                )
                detail = EvaluationDetail.error(ErrorKind.EXCEPTION, FlagValue.null())
            state.add_flag(flag, detail, with_reasons, details_only_for_tracked_flags)
        return state

    async def _typed(
        self,
        key: str,
        user: User | None,
        default: T,
        check: Callable[[FlagValue], bool],
        convert: Callable[[FlagValue], T],
        with_reasons: bool,
    ) -> EvaluationDetail[T]:
        detail = await self._evaluate(key, user, FlagValue.of(default), check, with_reasons)
        if detail.variation_index is None:
            return EvaluationDetail(default, None, detail.reason)
        return EvaluationDetail(convert(detail.value), detail.variation_index, detail.reason)

    async def _evaluate(
        self,
        key: str,
        user: User | None,
        default: FlagValue,
        check: Callable[[FlagValue], bool] | None,
        with_reasons: bool,
    ) -> EvaluationDetail[FlagValue]:
        detail = await self._evaluate_internal(key, user, default, check, with_reasons)
        metrics.evaluations_total.add(1, {"reason": detail.reason.kind.value})
        return detail

    async def _evaluate_internal(
        self,
        key: str,
        user: User | None,
        default: FlagValue,
        check: Callable[[FlagValue], bool] | None,
        with_reasons: bool,
    ) -> EvaluationDetail[FlagValue]:
        factory = self._event_factory_with_reasons if with_reasons else self._event_factory
        if not self.is_initialized():
            if await self._store.initialized():
                logger.warning(
                    "Evaluation called before client initialized; using last known values",
                    extra={"flag_key": key},
                )
            else:
                logger.warning(
                    "Evaluation called before client initialized; returning default value",
                    extra={"flag_key": key},
                )
                self._event_processor.send_event(
                    factory.new_unknown_flag_event(key, user, default, ErrorKind.CLIENT_NOT_READY)
                )
                return EvaluationDetail.error(ErrorKind.CLIENT_NOT_READY, default)

        flag: FeatureFlag | None = None
        try:
            item = await self._store.get(FEATURES, key)
            flag = item if isinstance(item, FeatureFlag) else None
            if flag is None:
                logger.info("Unknown feature flag; returning default value", extra={"flag_key": key})
                self._event_processor.send_event(
                    factory.new_unknown_flag_event(key, user, default, ErrorKind.FLAG_NOT_FOUND)
                )
                return EvaluationDetail.error(ErrorKind.FLAG_NOT_FOUND, default)
            if user is None or user.key is None:
                logger.warning(
                    "Null user or null user key when evaluating flag; returning default value",
                    extra={"flag_key": key},
                )
                self._event_processor.send_event(
                    factory.new_default_event(flag, user, default, ErrorKind.USER_NOT_SPECIFIED)
                )
                return EvaluationDetail.error(ErrorKind.USER_NOT_SPECIFIED, default)
            if user.key == "":
                logger.warning(
                    "User key is blank; flag evaluation will proceed but the user will not be stored",
                    extra={"flag_key": key},
                )

            result = await self._evaluator.evaluate(flag, user, factory)
            for event in result.prerequisite_events:
                self._event_processor.send_event(event)
            detail = result.detail
            if detail.value.is_null():
                detail = EvaluationDetail(default, detail.variation_index, detail.reason)
            elif check is not None and not check(detail.value):
                logger.error(
                    "Feature flag evaluation expected a different result type",
                    extra={"flag_key": key, "value_type": detail.value.type.value},
                )
                detail = EvaluationDetail.error(ErrorKind.WRONG_TYPE, default)
            self._event_processor.send_event(
                factory.new_feature_request_event(flag, user, detail, default)
            )
            return detail
        except Exception as e:
            logger.error(
                "Encountered exception while evaluating feature flag",
                extra={"flag_key": key, "error": str(e)},
            )
            if flag is not None:
                self._event_processor.send_event(
                    factory.new_default_event(flag, user, default, ErrorKind.EXCEPTION)
                )
            else:
                self._event_processor.send_event(
                    factory.new_unknown_flag_event(key, user, default, ErrorKind.EXCEPTION)
                )
            return EvaluationDetail.error(ErrorKind.EXCEPTION, default)

    async def _get_flag(self, key: str) -> FeatureFlag | None:
        item = await self._store.get(FEATURES, key)
        return item if isinstance(item, FeatureFlag) else None

    async def _get_segment(self, key: str) -> Segment | None:
        item = await self._store.get(SEGMENTS, key)
        return item if isinstance(item, Segment) else None


def _data_store_type(store: DataStore) -> str:
    return "memory" if isinstance(store, InMemoryDataStore) else "custom"
