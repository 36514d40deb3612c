import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest

from rtcsignal.client import ReadyState, SignalingClient
from rtcsignal.config import SignalingClientConfig
from rtcsignal.errors import ConfigurationError, InvalidStateError, RecipientValidationError
from rtcsignal.messages import decode_payload, encode_payload
from rtcsignal.signer import SigV4RequestSigner, sign_url
from rtcsignal.transport import Transport

CHANNEL_ARN = "arn:aws:kinesisvideo:us-west-2:123456789012:channel/demo/1234567890123"
ENDPOINT = "wss://endpoint.kinesisvideo.us-west-2.amazonaws.com"
SIGNED_URL = "wss://endpoint.kinesisvideo.us-west-2.amazonaws.com/?X-Amz-Signature=abc"
NOW = datetime(2020, 5, 17, 12, 30, tzinfo=timezone.utc)

SDP_OFFER = {"type": "offer", "sdp": "v=0\r\no=- 1 2 IN IP4 127.0.0.1\r\n"}
SDP_ANSWER = {"type": "answer", "sdp": "v=0\r\no=- 3 4 IN IP4 127.0.0.1\r\n"}
EVENTS = ("open", "sdp_offer", "sdp_answer", "ice_candidate", "close", "error")


class FakeTransport(Transport):
    def __init__(self, url: str) -> None:
        super().__init__()
        self.url = url
        self.connected = False
        self.close_calls = 0
        self.sent: List[str] = []

    def connect(self) -> None:
        self.connected = True

    def send(self, frame: str) -> None:
        self.sent.append(frame)

    def close(self) -> None:
        self.close_calls += 1


class FakeTransportFactory:
    def __init__(self) -> None:
        self.transports: List[FakeTransport] = []

    def __call__(self, url: str) -> FakeTransport:
        transport = FakeTransport(url)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


class FakeSigner:
    def __init__(self, gate: Optional[asyncio.Event] = None, error: Optional[Exception] = None) -> None:
        self.gate = gate
        self.error = error
        self.calls: List[tuple] = []

    async def get_signed_url(self, endpoint: str, query_params: dict, date: Optional[datetime] = None) -> str:
        self.calls.append((endpoint, dict(query_params), date))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return SIGNED_URL


class SyncSigner:
    def get_signed_url(self, endpoint: str, query_params: dict, date: Optional[datetime] = None) -> str:
        return SIGNED_URL


@dataclass
class Candidate:
    candidate: str
    sdpMid: str
    sdpMLineIndex: int


def _config(role: str = "MASTER", **overrides: Any) -> dict:
    config = {
        "role": role,
        "channel_arn": CHANNEL_ARN,
        "channel_endpoint": ENDPOINT,
        "region": "us-west-2",
        "request_signer": FakeSigner(),
    }
    if role == "VIEWER":
        config["client_id"] = "viewer-1"
    config.update(overrides)
    return config


def _client(role: str = "MASTER", **overrides: Any) -> tuple[SignalingClient, FakeTransportFactory]:
    factory = FakeTransportFactory()
    client = SignalingClient(_config(role, **overrides), transport_factory=factory, clock=lambda: NOW)
    return client, factory


def _record(client: SignalingClient) -> list:
    events: list = []
    for name in EVENTS:
        client.on(name, lambda *args, _name=name: events.append((_name, *args)))
    return events


def _frame(message_type: str, payload: Any, sender: Optional[str] = None) -> str:
    data = {"messageType": message_type, "messagePayload": encode_payload(payload)}
    if sender is not None:
        data["senderClientId"] = sender
    return json.dumps(data)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


async def _open(client: SignalingClient, factory: FakeTransportFactory) -> FakeTransport:
    client.open()
    await _settle()
    transport = factory.last
    transport.emit("open")
    return transport


# ---------------------------------------------------------------------- configuration


def test_viewer_requires_client_id() -> None:
    with pytest.raises(ConfigurationError):
        SignalingClient(_config("VIEWER", client_id=None))
    with pytest.raises(ConfigurationError):
        SignalingClient(_config("VIEWER", client_id=""))


def test_master_rejects_client_id() -> None:
    with pytest.raises(ConfigurationError):
        SignalingClient(_config("MASTER", client_id="master-1"))


def test_credentials_or_signer_required() -> None:
    with pytest.raises(ConfigurationError):
        SignalingClient(_config(request_signer=None))


@pytest.mark.parametrize("missing", ["channel_arn", "channel_endpoint", "region", "role"])
def test_missing_required_values_are_rejected(missing: str) -> None:
    config = _config()
    config[missing] = None

    with pytest.raises(ConfigurationError):
        SignalingClient(config)


def test_none_config_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        SignalingClient(None)


def test_config_is_copied_from_caller_mapping() -> None:
    config = _config()
    client = SignalingClient(config)

    config["channel_arn"] = "arn:aws:kinesisvideo:us-west-2:1:channel/other/1"
    config["role"] = "VIEWER"

    assert client.config.channel_arn == CHANNEL_ARN
    assert client.role.value == "MASTER"


def test_accepts_validated_model() -> None:
    model = SignalingClientConfig.model_validate(_config("VIEWER"))

    client = SignalingClient(model)

    assert client.config == model
    assert client.config.client_id == "viewer-1"
    assert client.ready_state is ReadyState.CLOSED


def test_default_signer_is_built_from_credentials() -> None:
    client = SignalingClient(
        _config(
            request_signer=None,
            credentials={"accessKeyId": "AKID", "secretAccessKey": "secret"},
        )
    )

    assert isinstance(client.request_signer, SigV4RequestSigner)
    assert client.request_signer.region == "us-west-2"


# ---------------------------------------------------------------------- open / close


@pytest.mark.asyncio
async def test_open_connects_transport_with_signed_url() -> None:
    client, factory = _client()
    events = _record(client)

    client.open()
    assert client.ready_state is ReadyState.CONNECTING
    await _settle()

    transport = factory.last
    assert transport.url == SIGNED_URL
    assert transport.connected is True
    assert events == []

    transport.emit("open")

    assert client.ready_state is ReadyState.OPEN
    assert events == [("open",)]


def test_open_requires_running_loop() -> None:
    client, _ = _client()

    with pytest.raises(RuntimeError):
        client.open()
    assert client.ready_state is ReadyState.CLOSED


@pytest.mark.asyncio
async def test_open_twice_raises() -> None:
    client, factory = _client()
    client.open()

    with pytest.raises(InvalidStateError):
        client.open()

    await _settle()
    factory.last.emit("open")
    with pytest.raises(InvalidStateError):
        client.open()
    assert len(factory.transports) == 1


@pytest.mark.asyncio
async def test_master_signs_channel_arn_only() -> None:
    client, _ = _client("MASTER")
    client.open()
    await _settle()

    endpoint, query_params, date = client.request_signer.calls[0]
    assert endpoint == ENDPOINT
    assert query_params == {"X-Amz-ChannelARN": CHANNEL_ARN}
    assert date == NOW


@pytest.mark.asyncio
async def test_viewer_signs_channel_arn_and_client_id() -> None:
    client, _ = _client("VIEWER")
    client.open()
    await _settle()

    _, query_params, _ = client.request_signer.calls[0]
    assert query_params == {"X-Amz-ChannelARN": CHANNEL_ARN, "X-Amz-ClientId": "viewer-1"}


@pytest.mark.asyncio
async def test_signing_date_applies_clock_offset() -> None:
    client, _ = _client(system_clock_offset=-90.5)
    client.open()
    await _settle()

    _, _, date = client.request_signer.calls[0]
    assert date == NOW - timedelta(seconds=90.5)


@pytest.mark.asyncio
async def test_plain_function_signer_is_accepted() -> None:
    client, factory = _client(request_signer=SyncSigner())

    await _open(client, factory)

    assert factory.last.url == SIGNED_URL
    assert client.ready_state is ReadyState.OPEN


@pytest.mark.asyncio
async def test_default_signer_produces_sigv4_url() -> None:
    client, factory = _client(
        request_signer=None,
        credentials={"access_key_id": "AKID", "secret_access_key": "secret", "session_token": "token"},
    )
    client.open()
    await _settle()

    expected = sign_url(
        ENDPOINT,
        {"X-Amz-ChannelARN": CHANNEL_ARN},
        region="us-west-2",
        access_key_id="AKID",
        secret_access_key="secret",
        session_token="token",
        date=NOW,
    )
    assert factory.last.url == expected


@pytest.mark.asyncio
async def test_signing_failure_is_emitted_as_error() -> None:
    failure = RuntimeError("no credentials")
    client, factory = _client(request_signer=FakeSigner(error=failure))
    events = _record(client)

    client.open()
    await _settle()

    assert events == [("error", failure)]
    assert factory.transports == []
    assert client.ready_state is ReadyState.CONNECTING

    client.close()
    assert client.ready_state is ReadyState.CLOSED
    assert events[-1] == ("close",)


def test_close_when_closed_is_noop() -> None:
    client, _ = _client()
    events = _record(client)

    client.close()
    client.close()

    assert client.ready_state is ReadyState.CLOSED
    assert events == []


@pytest.mark.asyncio
async def test_close_while_signing_aborts_open() -> None:
    gate = asyncio.Event()
    client, factory = _client(request_signer=FakeSigner(gate=gate))
    events = _record(client)

    client.open()
    await _settle()
    client.close()

    assert client.ready_state is ReadyState.CLOSED
    assert events == [("close",)]

    gate.set()
    await _settle()

    assert factory.transports == []
    assert client.ready_state is ReadyState.CLOSED
    assert events == [("close",)]


@pytest.mark.asyncio
async def test_stale_open_attempt_does_not_create_transport() -> None:
    gate = asyncio.Event()
    signer = FakeSigner(gate=gate)
    client, factory = _client(request_signer=signer)

    client.open()
    await _settle()
    client.close()
    client.open()
    gate.set()
    await _settle()

    assert len(signer.calls) == 2
    assert len(factory.transports) == 1
    assert client.ready_state is ReadyState.CONNECTING


@pytest.mark.asyncio
async def test_close_with_transport_detaches_and_emits_once() -> None:
    client, factory = _client()
    transport = await _open(client, factory)
    events = _record(client)

    client.close()
    client.close()

    assert client.ready_state is ReadyState.CLOSING
    assert transport.close_calls == 1

    transport.emit("close")

    assert client.ready_state is ReadyState.CLOSED
    assert events == [("close",)]
    for name in ("open", "message", "error", "close"):
        assert transport.listener_count(name) == 0

    transport.emit("close")
    assert events == [("close",)]


@pytest.mark.asyncio
async def test_remote_close_goes_straight_to_closed() -> None:
    client, factory = _client()
    transport = await _open(client, factory)
    events = _record(client)

    transport.emit("close")

    assert client.ready_state is ReadyState.CLOSED
    assert events == [("close",)]
    assert transport.close_calls == 0


@pytest.mark.asyncio
async def test_transport_open_after_close_request_is_ignored() -> None:
    client, factory = _client()
    events = _record(client)
    client.open()
    await _settle()
    transport = factory.last

    client.close()
    transport.emit("open")

    assert client.ready_state is ReadyState.CLOSING
    assert events == []

    transport.emit("close")
    assert client.ready_state is ReadyState.CLOSED
    assert events == [("close",)]


@pytest.mark.asyncio
async def test_client_can_reopen_after_close() -> None:
    client, factory = _client()
    first = await _open(client, factory)
    first.emit("close")

    second = await _open(client, factory)

    assert second is not first
    assert client.ready_state is ReadyState.OPEN
    assert len(factory.transports) == 2


@pytest.mark.asyncio
async def test_transport_error_is_forwarded_verbatim() -> None:
    client, factory = _client()
    transport = await _open(client, factory)
    events = _record(client)
    failure = ConnectionResetError("peer went away")

    transport.emit("error", failure)

    assert events == [("error", failure)]
    assert events[0][1] is failure
    assert client.ready_state is ReadyState.OPEN


# ---------------------------------------------------------------------- sending


@pytest.mark.parametrize(
    "role, recipient, allowed",
    [
        ("MASTER", None, False),
        ("MASTER", "", False),
        ("MASTER", "viewer-1", True),
        ("VIEWER", None, True),
        ("VIEWER", "", True),
        ("VIEWER", "master", False),
    ],
)
@pytest.mark.parametrize("method", ["send_sdp_offer", "send_sdp_answer", "send_ice_candidate"])
@pytest.mark.asyncio
async def test_recipient_rule(role: str, recipient: Optional[str], allowed: bool, method: str) -> None:
    client, factory = _client(role)
    transport = await _open(client, factory)
    send = getattr(client, method)

    if allowed:
        send({"value": 1}, recipient)
        assert len(transport.sent) == 1
    else:
        with pytest.raises(RecipientValidationError):
            send({"value": 1}, recipient)
        assert transport.sent == []


@pytest.mark.asyncio
async def test_send_requires_open_connection() -> None:
    client, factory = _client()

    with pytest.raises(InvalidStateError, match="not open"):
        client.send_sdp_answer(SDP_ANSWER)

    client.open()
    await _settle()
    with pytest.raises(InvalidStateError):
        client.send_ice_candidate({"candidate": "c"}, "viewer-1")
    assert factory.last.sent == []


@pytest.mark.asyncio
async def test_master_frame_format() -> None:
    client, factory = _client("MASTER")
    transport = await _open(client, factory)

    client.send_sdp_answer(SDP_ANSWER, "viewer-1")

    frame = json.loads(transport.sent[0])
    assert set(frame) == {"action", "messagePayload", "recipientClientId"}
    assert frame["action"] == "SDP_ANSWER"
    assert frame["recipientClientId"] == "viewer-1"
    assert decode_payload(frame["messagePayload"]) == SDP_ANSWER


@pytest.mark.asyncio
async def test_viewer_frame_omits_recipient() -> None:
    client, factory = _client("VIEWER")
    transport = await _open(client, factory)

    client.send_sdp_offer(SDP_OFFER)
    client.send_ice_candidate({"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host"})

    offer, candidate = (json.loads(frame) for frame in transport.sent)
    assert offer == {"action": "SDP_OFFER", "messagePayload": encode_payload(SDP_OFFER)}
    assert candidate["action"] == "ICE_CANDIDATE"
    assert "recipientClientId" not in candidate


@pytest.mark.asyncio
async def test_dataclass_payload_is_serialised() -> None:
    client, factory = _client("VIEWER")
    transport = await _open(client, factory)

    client.send_ice_candidate(Candidate("candidate:1 1 udp 1 10.0.0.1 5000 typ host", "0", 0))

    frame = json.loads(transport.sent[0])
    assert decode_payload(frame["messagePayload"]) == {
        "candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


# ---------------------------------------------------------------------- receiving


@pytest.mark.asyncio
async def test_candidates_before_offer_are_released_after_it() -> None:
    client, factory = _client("MASTER")
    transport = await _open(client, factory)
    events = _record(client)

    transport.emit("message", _frame("ICE_CANDIDATE", {"candidate": "c1"}, "viewer-1"))
    transport.emit("message", _frame("ICE_CANDIDATE", {"candidate": "c2"}, "viewer-1"))
    assert events == []

    transport.emit("message", _frame("SDP_OFFER", SDP_OFFER, "viewer-1"))
    transport.emit("message", _frame("ICE_CANDIDATE", {"candidate": "c3"}, "viewer-1"))

    assert events == [
        ("sdp_offer", SDP_OFFER, "viewer-1"),
        ("ice_candidate", {"candidate": "c1"}, "viewer-1"),
        ("ice_candidate", {"candidate": "c2"}, "viewer-1"),
        ("ice_candidate", {"candidate": "c3"}, "viewer-1"),
    ]


@pytest.mark.asyncio
async def test_pending_candidates_are_isolated_per_peer() -> None:
    client, factory = _client("MASTER")
    transport = await _open(client, factory)
    events = _record(client)

    transport.emit("message", _frame("ICE_CANDIDATE", {"candidate": "a1"}, "viewer-a"))
    transport.emit("message", _frame("ICE_CANDIDATE", {"candidate": "b1"}, "viewer-b"))
    transport.emit("message", _frame("SDP_OFFER", SDP_OFFER, "viewer-a"))

    assert events == [
        ("sdp_offer", SDP_OFFER, "viewer-a"),
        ("ice_candidate", {"candidate": "a1"}, "viewer-a"),
    ]

    transport.emit("message", _frame("SDP_OFFER", SDP_OFFER, "viewer-b"))
    assert events[-1] == ("ice_candidate", {"candidate": "b1"}, "viewer-b")


@pytest.mark.asyncio
async def test_viewer_buffers_master_candidates_until_answer() -> None:
    client, factory = _client("VIEWER")
    transport = await _open(client, factory)
    events = _record(client)

    transport.emit("message", _frame("ICE_CANDIDATE", {"candidate": "m1"}))
    assert events == []

    transport.emit("message", _frame("SDP_ANSWER", SDP_ANSWER, ""))

    assert events == [
        ("sdp_answer", SDP_ANSWER, None),
        ("ice_candidate", {"candidate": "m1"}, None),
    ]


@pytest.mark.parametrize(
    "frame",
    [
        "not json",
        "[1, 2, 3]",
        json.dumps({"messageType": "SDP_OFFER"}),
        json.dumps({"messageType": "SDP_OFFER", "messagePayload": "%%%not-base64%%%"}),
        json.dumps({"messageType": "SDP_OFFER", "messagePayload": 42}),
    ],
)
@pytest.mark.asyncio
async def test_malformed_frames_are_dropped(frame: str) -> None:
    client, factory = _client("MASTER")
    transport = await _open(client, factory)
    events = _record(client)

    transport.emit("message", frame)

    assert events == []
    assert client.ready_state is ReadyState.OPEN


@pytest.mark.asyncio
async def test_unknown_message_types_are_ignored() -> None:
    client, factory = _client("MASTER")
    transport = await _open(client, factory)
    events = _record(client)

    transport.emit("message", _frame("STATUS_RESPONSE", {"statusCode": "400"}, "viewer-1"))
    transport.emit("message", _frame("GO_AWAY", {}, None))

    assert events == []


@pytest.mark.asyncio
async def test_ledger_is_cleared_on_close() -> None:
    client, factory = _client("MASTER")
    first = await _open(client, factory)
    first.emit("message", _frame("ICE_CANDIDATE", {"candidate": "stale"}, "viewer-1"))
    first.emit("close")

    second = await _open(client, factory)
    events = _record(client)
    second.emit("message", _frame("SDP_OFFER", SDP_OFFER, "viewer-1"))

    assert events == [("sdp_offer", SDP_OFFER, "viewer-1")]


@pytest.mark.asyncio
async def test_pending_candidate_cap_drops_oldest() -> None:
    client, factory = _client("MASTER", max_pending_candidates=2)
    transport = await _open(client, factory)
    events = _record(client)

    for name in ("c1", "c2", "c3"):
        transport.emit("message", _frame("ICE_CANDIDATE", {"candidate": name}, "viewer-1"))
    transport.emit("message", _frame("SDP_OFFER", SDP_OFFER, "viewer-1"))

    assert [args[1]["candidate"] for args in events if args[0] == "ice_candidate"] == ["c2", "c3"]


@pytest.mark.asyncio
async def test_coroutine_listeners_are_scheduled() -> None:
    client, factory = _client("MASTER")
    transport = await _open(client, factory)
    received: list = []

    async def on_offer(payload: Any, sender: Optional[str]) -> None:
        await asyncio.sleep(0)
        received.append((payload, sender))

    client.on("sdp_offer", on_offer)
    transport.emit("message", _frame("SDP_OFFER", SDP_OFFER, "viewer-1"))
    await _settle()

    assert received == [(SDP_OFFER, "viewer-1")]


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others() -> None:
    client, factory = _client("MASTER")
    transport = await _open(client, factory)
    received: list = []

    def broken(payload: Any, sender: Optional[str]) -> None:
        raise ValueError("listener bug")

    client.on("sdp_offer", broken)
    client.on("sdp_offer", lambda payload, sender: received.append(sender))
    transport.emit("message", _frame("SDP_OFFER", SDP_OFFER, "viewer-1"))

    assert received == ["viewer-1"]
