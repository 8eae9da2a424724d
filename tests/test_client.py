"""FeatureFlagClient のユニットテスト"""

import asyncio
import hashlib
import hmac
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import respx
from k1s0_featureflag_client import (
    FEATURES,
    SEGMENTS,
    Config,
    DataSource,
    ErrorKind,
    EventProcessor,
    EventsSection,
    FeatureFlag,
    FeatureFlagClient,
    FeatureRequestEvent,
    FlagValue,
    InMemoryDataStore,
    NullDataSource,
    ReasonKind,
    User,
)
from k1s0_featureflag_client.events import CustomEvent, Event, IdentifyEvent

USER = User(key="userkey")


class CapturingEventProcessor(EventProcessor):
    def __init__(self) -> None:
        self.events: list[Event] = []
        self.flushed = 0
        self.closed = False

    def send_event(self, event: Event) -> None:
        self.events.append(event)

    async def flush(self) -> None:
        self.flushed += 1

    async def close(self) -> None:
        self.closed = True


class NeverReadyDataSource(DataSource):
    async def start(self) -> asyncio.Event:
        return asyncio.Event()

    def is_initialized(self) -> bool:
        return False


def make_flag(key: str, variations: list[Any], **kwargs: Any) -> FeatureFlag:
    data: dict[str, Any] = {
        "key": key,
        "version": 1,
        "on": True,
        "variations": variations,
        "offVariation": 0,
        "fallthrough": {"variation": len(variations) - 1},
    }
    data.update(kwargs)
    return FeatureFlag.from_dict(data)


FLAGS = [
    make_flag("bool-flag", [False, True]),
    make_flag("int-flag", [0, 3]),
    make_flag("float-flag", [0, 2.5]),
    make_flag("string-flag", ["a", "b"]),
    make_flag("json-flag", [{}, {"x": [1, 2]}]),
    make_flag("null-flag", [None]),
    make_flag("off-flag", ["off", "on"], on=False, offVariation=None),
    make_flag("client-flag", ["a", "b"], clientSide=True, trackEvents=True),
    make_flag(
        "with-prereq",
        ["no", "yes"],
        prerequisites=[{"key": "bool-flag", "variation": 1}],
    ),
]


async def make_client(
    flags: list[FeatureFlag] | None = None, **config: Any
) -> tuple[FeatureFlagClient, CapturingEventProcessor, InMemoryDataStore]:
    store = InMemoryDataStore()
    await store.init({SEGMENTS: {}, FEATURES: {f.key: f for f in (flags or FLAGS)}})
    processor = CapturingEventProcessor()
    client = FeatureFlagClient(
        Config(sdk_key="sdk-key", **config),
        store=store,
        data_source=NullDataSource(),
        event_processor=processor,
    )
    await client.start()
    return client, processor, store


async def test_typed_variations() -> None:
    """型付きの評価メソッドがフラグの値を返すこと。"""
    client, _, _ = await make_client()
    assert await client.bool_variation("bool-flag", USER, False) is True
    assert await client.int_variation("int-flag", USER, 0) == 3
    assert await client.float_variation("float-flag", USER, 0.0) == 2.5
    assert await client.int_variation("float-flag", USER, 0) == 2
    assert await client.string_variation("string-flag", USER, "z") == "b"
    assert await client.json_variation("json-flag", USER, None) == FlagValue({"x": [1, 2]})
    assert await client.variation("json-flag", USER, None) == {"x": [1, 2]}


async def test_variation_detail() -> None:
    """詳細付きの評価は理由とバリエーション番号を返すこと。"""
    client, processor, _ = await make_client()
    detail = await client.string_variation_detail("string-flag", USER, "z")
    assert detail.value == "b"
    assert detail.variation_index == 1
    assert detail.reason.kind == ReasonKind.FALLTHROUGH
    event = processor.events[-1]
    assert isinstance(event, FeatureRequestEvent)
    assert event.reason is not None
    assert event.default == FlagValue("z")


async def test_wrong_type_returns_default() -> None:
    """型が合わない場合は既定値と WRONG_TYPE を返すこと。"""
    client, _, _ = await make_client()
    detail = await client.bool_variation_detail("string-flag", USER, False)
    assert detail.value is False
    assert detail.variation_index is None
    assert detail.reason.error_kind == ErrorKind.WRONG_TYPE
    assert await client.int_variation("string-flag", USER, 7) == 7


async def test_null_result_returns_default() -> None:
    """評価結果が null なら既定値を返すこと。"""
    client, _, _ = await make_client()
    assert await client.string_variation("null-flag", USER, "dflt") == "dflt"
    detail = await client.string_variation_detail("off-flag", USER, "dflt")
    assert detail.value == "dflt"
    assert detail.reason.kind == ReasonKind.OFF


async def test_unknown_flag() -> None:
    """存在しないフラグは FLAG_NOT_FOUND で、未知フラグのイベントを送ること。"""
    client, processor, _ = await make_client()
    detail = await client.int_variation_detail("missing", USER, 5)
    assert detail.value == 5
    assert detail.reason.error_kind == ErrorKind.FLAG_NOT_FOUND
    event = processor.events[-1]
    assert isinstance(event, FeatureRequestEvent)
    assert event.key == "missing"
    assert event.version is None
    assert event.value == FlagValue(5)


async def test_user_not_specified() -> None:
    """ユーザーやキーが無い場合は USER_NOT_SPECIFIED を返すこと。"""
    client, _, _ = await make_client()
    detail = await client.bool_variation_detail("bool-flag", None, False)
    assert detail.reason.error_kind == ErrorKind.USER_NOT_SPECIFIED
    detail = await client.bool_variation_detail("bool-flag", User(key=None), False)
    assert detail.reason.error_kind == ErrorKind.USER_NOT_SPECIFIED


async def test_client_not_ready() -> None:
    """未初期化かつストアも空なら CLIENT_NOT_READY を返すこと。"""
    processor = CapturingEventProcessor()
    client = FeatureFlagClient(
        Config(sdk_key="sdk-key", start_wait=0),
        data_source=NeverReadyDataSource(),
        event_processor=processor,
    )
    await client.start()
    assert client.is_initialized() is False
    detail = await client.bool_variation_detail("bool-flag", USER, True)
    assert detail.value is True
    assert detail.reason.error_kind == ErrorKind.CLIENT_NOT_READY
    assert len(processor.events) == 1
    state = await client.all_flags_state(USER)
    assert state.is_valid() is False


async def test_not_ready_uses_initialized_store() -> None:
    """更新元が未初期化でもストアが初期化済みならその値で評価すること。"""
    store = InMemoryDataStore()
    await store.init({FEATURES: {f.key: f for f in FLAGS}})
    client = FeatureFlagClient(
        Config(sdk_key="sdk-key", start_wait=0),
        store=store,
        data_source=NeverReadyDataSource(),
        event_processor=CapturingEventProcessor(),
    )
    assert await client.bool_variation("bool-flag", USER, False) is True


async def test_prerequisite_events_are_sent() -> None:
    """前提条件フラグの評価イベントも送ること。"""
    client, processor, _ = await make_client()
    assert await client.string_variation("with-prereq", USER, "z") == "yes"
    prereq, main = processor.events
    assert prereq.key == "bool-flag"
    assert prereq.prereq_of == "with-prereq"
    assert main.key == "with-prereq"


async def test_store_exception_returns_default() -> None:
    """ストアの例外は EXCEPTION として既定値を返すこと。"""

    class BrokenStore(InMemoryDataStore):
        async def get(self, kind, key):
            raise RuntimeError("store is down")

    store = BrokenStore()
    await store.init({FEATURES: {}})
    client = FeatureFlagClient(
        Config(sdk_key="sdk-key"),
        store=store,
        data_source=NullDataSource(),
        event_processor=CapturingEventProcessor(),
    )
    detail = await client.bool_variation_detail("bool-flag", USER, False)
    assert detail.value is False
    assert detail.reason.error_kind == ErrorKind.EXCEPTION


async def test_all_flags_state() -> None:
    """全フラグの評価結果を返し、分析イベントは生成しないこと。"""
    client, processor, _ = await make_client()
    state = await client.all_flags_state(USER, with_reasons=True)
    assert state.is_valid() is True
    assert state.get_flag_value("string-flag") == FlagValue("b")
    assert state.get_flag_reason("string-flag").kind == ReasonKind.FALLTHROUGH
    values = state.to_values_map()
    assert values["json-flag"] == {"x": [1, 2]}
    data = state.to_json_dict()
    assert data["$valid"] is True
    assert data["$flagsState"]["client-flag"] == {
        "variation": 1,
        "version": 1,
        "reason": {"kind": "FALLTHROUGH"},
        "trackEvents": True,
    }
    assert processor.events == []


async def test_all_flags_state_filters() -> None:
    """client_side_only と details_only_for_tracked_flags の指定。"""
    client, _, _ = await make_client()
    state = await client.all_flags_state(USER, client_side_only=True)
    assert set(state.to_values_map()) == {"client-flag"}
    state = await client.all_flags_state(
        USER, with_reasons=True, details_only_for_tracked_flags=True
    )
    assert state.metadata["client-flag"].version == 1
    assert state.metadata["bool-flag"].version is None
    assert state.get_flag_reason("bool-flag") is None
    assert (await client.all_flags_state(None)).is_valid() is False


async def test_identify_and_track() -> None:
    """identify / track がイベントを送り、キーの無いユーザーは無視すること。"""
    client, processor, _ = await make_client()
    client.identify(USER)
    client.track("purchase", USER, {"amount": 5}, 9.5)
    client.identify(User(key=None))
    client.track("purchase", None)
    identify, custom = processor.events
    assert isinstance(identify, IdentifyEvent)
    assert isinstance(custom, CustomEvent)
    assert custom.data == FlagValue({"amount": 5})
    assert custom.metric_value == 9.5


async def test_secure_mode_hash() -> None:
    """SDK キーで署名した HMAC-SHA256 を返すこと。"""
    client, _, _ = await make_client()
    expected = hmac.new(b"sdk-key", b"userkey", hashlib.sha256).hexdigest()
    assert client.secure_mode_hash(USER) == expected
    assert client.secure_mode_hash(User(key=None)) is None


async def test_offline_mode() -> None:
    """オフラインモードでは既定値を返し、all_flags_state は無効になること。"""
    async with FeatureFlagClient(Config(sdk_key="sdk-key", offline=True)) as client:
        assert client.is_offline() is True
        assert client.is_initialized() is True
        assert await client.bool_variation("bool-flag", USER, True) is True
        assert (await client.all_flags_state(USER)).is_valid() is False


async def test_close_flushes_and_closes_processor() -> None:
    """flush / close がイベントプロセッサーに委譲されること。"""
    client, processor, _ = await make_client()
    await client.flush()
    await client.close()
    assert processor.flushed == 1
    assert processor.closed is True


async def test_close_closes_data_source_and_store() -> None:
    """close が更新元・イベントプロセッサー・ストアを閉じること。"""
    data_source = MagicMock(spec=DataSource)
    data_source.close = AsyncMock()
    processor = MagicMock(spec=EventProcessor)
    processor.close = AsyncMock()
    store = InMemoryDataStore()
    store.close = AsyncMock()
    client = FeatureFlagClient(
        Config(sdk_key="sdk-key"),
        store=store,
        data_source=data_source,
        event_processor=processor,
    )
    await client.close()
    data_source.close.assert_awaited_once()
    processor.close.assert_awaited_once()
    store.close.assert_awaited_once()


DIAGNOSTIC_URL = "http://featureflag-server:8080/diagnostic"


@respx.mock
async def test_default_event_processor_sends_diagnostic_init() -> None:
    """既定のイベントプロセッサーは開始時に diagnostic-init を送ること。"""
    route = respx.post(DIAGNOSTIC_URL).mock(return_value=httpx.Response(202))
    async with FeatureFlagClient(Config(sdk_key="sdk-key"), data_source=NullDataSource()) as client:
        await client.flush()
    assert route.call_count == 1
    init = json.loads(route.calls[0].request.content)
    assert init["kind"] == "diagnostic-init"
    assert init["configuration"]["dataStoreType"] == "memory"


@respx.mock
async def test_diagnostic_opt_out() -> None:
    """diagnostic_opt_out では診断イベントを送らないこと。"""
    route = respx.post(DIAGNOSTIC_URL).mock(return_value=httpx.Response(202))
    config = Config(sdk_key="sdk-key", events=EventsSection(diagnostic_opt_out=True))
    async with FeatureFlagClient(config, data_source=NullDataSource()) as client:
        await client.flush()
    assert route.call_count == 0
