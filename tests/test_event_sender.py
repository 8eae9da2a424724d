"""HttpEventSender のユニットテスト（respx モック）"""

import httpx
import respx
from k1s0_featureflag_client import Config, EventsSection, HttpEventSender

EVENTS_URI = "http://events-server:8080"
BULK_URL = f"{EVENTS_URI}/bulk"
DIAGNOSTIC_URL = f"{EVENTS_URI}/diagnostic"
PAYLOAD = '[{"kind":"identify"}]'


def make_sender() -> HttpEventSender:
    config = Config(sdk_key="sdk-key", events_uri=EVENTS_URI, events=EventsSection(retry_delay=0))
    return HttpEventSender(config)


@respx.mock
async def test_send_success_sets_headers() -> None:
    """送信成功時にヘッダーとペイロードが送られること。"""
    route = respx.post(BULK_URL).mock(return_value=httpx.Response(202))
    sender = make_sender()
    result = await sender.send_event_data(PAYLOAD, 1)
    await sender.close()
    assert result.success is True
    assert route.call_count == 1
    request = route.calls[0].request
    assert request.content == PAYLOAD.encode()
    assert request.headers["Authorization"] == "sdk-key"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Event-Schema"] == "3"
    assert request.headers["User-Agent"].startswith("k1s0-featureflag-client/")
    assert request.headers["X-Event-Payload-Id"]


@respx.mock
async def test_retries_once_with_same_payload_id() -> None:
    """5xx は 1 回だけ再送し、再送時も同じペイロード ID を使うこと。"""
    route = respx.post(BULK_URL).mock(
        side_effect=[httpx.Response(500), httpx.Response(500), httpx.Response(202)]
    )
    sender = make_sender()
    result = await sender.send_event_data(PAYLOAD, 1)
    assert result.success is False
    assert route.call_count == 2
    first, second = (c.request.headers["X-Event-Payload-Id"] for c in route.calls)
    assert first == second


@respx.mock
async def test_retry_succeeds_after_recoverable_error() -> None:
    """429 の後の再送が成功すれば成功扱いになること。"""
    route = respx.post(BULK_URL).mock(side_effect=[httpx.Response(429), httpx.Response(200)])
    result = await make_sender().send_event_data(PAYLOAD, 1)
    assert result.success is True
    assert route.call_count == 2


@respx.mock
async def test_network_error_is_retried() -> None:
    """接続エラーも再送の対象になること。"""
    route = respx.post(BULK_URL).mock(
        side_effect=[httpx.ConnectError("connection refused"), httpx.Response(202)]
    )
    result = await make_sender().send_event_data(PAYLOAD, 1)
    assert result.success is True
    assert route.call_count == 2


@respx.mock
async def test_unrecoverable_error_is_not_retried() -> None:
    """400 / 401 などの回復不能なエラーは再送しないこと。"""
    route = respx.post(BULK_URL).mock(return_value=httpx.Response(400))
    result = await make_sender().send_event_data(PAYLOAD, 1)
    assert result.success is False
    assert route.call_count == 1

    route.mock(return_value=httpx.Response(401))
    result = await make_sender().send_event_data(PAYLOAD, 1)
    assert result.success is False
    assert route.call_count == 2


@respx.mock
async def test_request_timeout_status_is_not_retried() -> None:
    """408 も 429 以外の 4xx として再送しないこと。"""
    route = respx.post(BULK_URL).mock(side_effect=[httpx.Response(408), httpx.Response(202)])
    result = await make_sender().send_event_data(PAYLOAD, 1)
    assert result.success is False
    assert route.call_count == 1


@respx.mock
async def test_server_time_from_date_header() -> None:
    """Date ヘッダーをエポックミリ秒として返すこと。"""
    respx.post(BULK_URL).mock(
        return_value=httpx.Response(202, headers={"Date": "Fri, 13 Feb 2009 23:31:30 GMT"})
    )
    result = await make_sender().send_event_data(PAYLOAD, 1)
    assert result.time_from_server == 1234567890000


@respx.mock
async def test_injected_client_is_not_closed() -> None:
    """外部から渡したクライアントは close で閉じないこと。"""
    respx.post(BULK_URL).mock(return_value=httpx.Response(202))
    config = Config(sdk_key="sdk-key", events_uri=EVENTS_URI)
    async with httpx.AsyncClient() as client:
        sender = HttpEventSender(config, client=client)
        assert (await sender.send_event_data(PAYLOAD, 1)).success is True
        await sender.close()
        assert client.is_closed is False


@respx.mock
async def test_diagnostic_event_is_posted_to_diagnostic_endpoint() -> None:
    """診断イベントは /diagnostic に送り、ペイロード ID やスキーマは付けないこと。"""
    route = respx.post(DIAGNOSTIC_URL).mock(side_effect=[httpx.Response(503), httpx.Response(202)])
    sender = make_sender()
    result = await sender.send_diagnostic_event('{"kind":"diagnostic-init"}')
    await sender.close()
    assert result.success is True
    assert route.call_count == 2
    request = route.calls[0].request
    assert request.content == b'{"kind":"diagnostic-init"}'
    assert request.headers["Authorization"] == "sdk-key"
    assert request.headers["Content-Type"] == "application/json"
    assert "X-Event-Payload-Id" not in request.headers
    assert "X-Event-Schema" not in request.headers
