"""
Client for sending and receiving messages on a signaling channel.

The client can operate as either the MASTER or a VIEWER.  Typically the MASTER
listens for SDP offers and ICE candidates and responds with an SDP answer and
its own candidates, while a VIEWER sends an SDP offer and its candidates and
listens for the MASTER's answer and candidates.

Events emitted to listeners registered with :meth:`SignalingClient.on`:

``open``
    The connection to the signaling service is open.
``sdp_offer`` / ``sdp_answer`` / ``ice_candidate``
    ``(payload, sender_client_id)``.  ``sender_client_id`` is ``None`` when a
    VIEWER hears from its MASTER.
``close``
    The connection closed; the client may be opened again.
``error``
    ``(exception)`` from the transport or the asynchronous open sequence.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Union

from pydantic import ValidationError

from .candidates import DEFAULT_CLIENT_ID, PendingIceCandidates
from .config import SignalingClientConfig
from .errors import (
    ConfigurationError,
    InvalidStateError,
    MalformedMessageError,
    RecipientValidationError,
)
from .events import EventEmitter
from .messages import InboundMessage, MessageEnvelope, MessageType, to_payload
from .role import Role
from .signer import SigV4RequestSigner
from .transport import Transport, TransportFactory, WebSocketTransport
from .utils.logging import redact_url
from .utils.validation import validate_value_non_nil

LOG = logging.getLogger(__name__)

Clock = Callable[[], datetime]

CHANNEL_ARN_PARAM = "X-Amz-ChannelARN"
CLIENT_ID_PARAM = "X-Amz-ClientId"


class ReadyState(Enum):
    CONNECTING = 0
    OPEN = 1
    CLOSING = 2
    CLOSED = 3


_TRANSITIONS: Dict[ReadyState, FrozenSet[ReadyState]] = {
    ReadyState.CLOSED: frozenset({ReadyState.CONNECTING}),
    ReadyState.CONNECTING: frozenset({ReadyState.OPEN, ReadyState.CLOSING, ReadyState.CLOSED}),
    ReadyState.OPEN: frozenset({ReadyState.CLOSING, ReadyState.CLOSED}),
    ReadyState.CLOSING: frozenset({ReadyState.CLOSED}),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_config(config: Union[SignalingClientConfig, Mapping[str, Any], None]) -> SignalingClientConfig:
    validate_value_non_nil(config, "config")
    if isinstance(config, SignalingClientConfig):
        return config.model_copy()
    try:
        return SignalingClientConfig.model_validate(dict(config))
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


class SignalingClient(EventEmitter):
    """
    Signaling session bound to one channel, one role and at most one transport.

    The connection must be opened with :meth:`open` from inside a running
    asyncio event loop; outcomes are reported through events.
    """

    DEFAULT_CLIENT_ID = DEFAULT_CLIENT_ID

    def __init__(
        self,
        config: Union[SignalingClientConfig, Mapping[str, Any]],
        *,
        transport_factory: Optional[TransportFactory] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__()
        self._config = _coerce_config(config)
        if self._config.request_signer is not None:
            self._request_signer = self._config.request_signer
        else:
            self._request_signer = SigV4RequestSigner(self._config.region, self._config.credentials)

        self._transport_factory: TransportFactory = transport_factory or WebSocketTransport
        self._clock: Clock = clock or _utcnow
        self._ready_state = ReadyState.CLOSED
        self._transport: Optional[Transport] = None
        self._open_task: Optional[asyncio.Task] = None
        self._open_attempt = 0
        self._pending_candidates = PendingIceCandidates(self._config.max_pending_candidates)
        self.logger = LOG.getChild(self._config.role.value.lower())

    # ------------------------------------------------------------------ properties

    @property
    def config(self) -> SignalingClientConfig:
        return self._config

    @property
    def role(self) -> Role:
        return self._config.role

    @property
    def ready_state(self) -> ReadyState:
        return self._ready_state

    @property
    def request_signer(self) -> Any:
        return self._request_signer

    def __repr__(self) -> str:
        return (
            f"SignalingClient(role={self.role.value}, channel={self._config.channel_arn!r}, "
            f"state={self._ready_state.name})"
        )

    # ------------------------------------------------------------------ lifecycle

    def open(self) -> None:
        """
        Start opening the connection.  Listen to ``open`` to learn when it is ready.
        """

        if self._ready_state is not ReadyState.CLOSED:
            raise InvalidStateError("Client is already open, opening, or closing")
        loop = asyncio.get_running_loop()
        self._transition(ReadyState.CONNECTING)
        self._open_attempt += 1
        self._open_task = loop.create_task(self._run_open(self._open_attempt))

    async def _run_open(self, attempt: int) -> None:
        try:
            await self._async_open(attempt)
        except Exception as exc:
            self._on_error(exc)

    async def create_signed_url(self) -> str:
        """
        Ask the request signer for the URL used to open the connection.
        """

        query_params = {CHANNEL_ARN_PARAM: self._config.channel_arn}
        if self._config.role is Role.VIEWER:
            query_params[CLIENT_ID_PARAM] = self._config.client_id

        signed_url = self._request_signer.get_signed_url(
            self._config.channel_endpoint,
            query_params,
            date=self._signing_date(),
        )
        if inspect.isawaitable(signed_url):
            signed_url = await signed_url
        return signed_url

    async def _async_open(self, attempt: int) -> None:
        signed_url = await self.create_signed_url()

        # close() or a newer open() may have run while signing.
        if self._ready_state is not ReadyState.CONNECTING or attempt != self._open_attempt:
            self.logger.debug("Open sequence superseded; not creating a transport")
            return

        self.logger.debug("Connecting to %s", redact_url(signed_url))
        transport = self._transport_factory(signed_url)
        self._transport = transport
        transport.on("open", self._on_open)
        transport.on("message", self._on_message)
        transport.on("error", self._on_error)
        transport.on("close", self._on_close)
        transport.connect()

    def _signing_date(self) -> datetime:
        offset = self._config.system_clock_offset
        now = self._clock()
        return now + timedelta(seconds=offset) if offset else now

    def close(self) -> None:
        """
        Close the connection.  Listen to ``close`` to learn when it is closed.
        """

        if self._transport is not None:
            if self._ready_state is ReadyState.CLOSING:
                return
            self._transition(ReadyState.CLOSING)
            self._transport.close()
        elif self._ready_state is not ReadyState.CLOSED:
            self._on_close()

    def _transition(self, target: ReadyState) -> None:
        current = self._ready_state
        if target not in _TRANSITIONS[current]:
            raise InvalidStateError(f"Illegal state transition {current.name} -> {target.name}")
        self.logger.debug("State %s -> %s", current.name, target.name)
        self._ready_state = target

    # ------------------------------------------------------------------ sending

    def send_sdp_offer(self, sdp_offer: Any, recipient_client_id: Optional[str] = None) -> None:
        """
        Send an SDP offer.  Typically only a VIEWER sends offers.
        """

        self._send_message(MessageType.SDP_OFFER, sdp_offer, recipient_client_id)

    def send_sdp_answer(self, sdp_answer: Any, recipient_client_id: Optional[str] = None) -> None:
        """
        Send an SDP answer.  Typically only the MASTER sends answers.
        """

        self._send_message(MessageType.SDP_ANSWER, sdp_answer, recipient_client_id)

    def send_ice_candidate(self, ice_candidate: Any, recipient_client_id: Optional[str] = None) -> None:
        self._send_message(MessageType.ICE_CANDIDATE, ice_candidate, recipient_client_id)

    def _send_message(self, action: MessageType, payload: Any, recipient_client_id: Optional[str]) -> None:
        if self._ready_state is not ReadyState.OPEN or self._transport is None:
            raise InvalidStateError(
                "Could not send message because the connection to the signaling service is not open."
            )
        self._validate_recipient_client_id(recipient_client_id)

        envelope = MessageEnvelope(
            action=action,
            payload=to_payload(payload),
            recipient_client_id=recipient_client_id or None,
        )
        self._transport.send(envelope.to_frame())

    def _validate_recipient_client_id(self, recipient_client_id: Optional[str]) -> None:
        if self._config.role is Role.MASTER and not recipient_client_id:
            raise RecipientValidationError(
                "Missing recipient client id. As the MASTER, all messages must be sent with a recipient client id."
            )
        if self._config.role is Role.VIEWER and recipient_client_id:
            raise RecipientValidationError(
                "Unexpected recipient client id. As the VIEWER, messages must not be sent with a recipient client id."
            )

    # ------------------------------------------------------------------ transport handlers

    def _on_open(self) -> None:
        if self._ready_state is not ReadyState.CONNECTING:
            self.logger.debug("Ignoring transport open in state %s", self._ready_state.name)
            return
        self._transition(ReadyState.OPEN)
        self.emit("open")

    def _on_message(self, frame: Union[str, bytes]) -> None:
        try:
            message = InboundMessage.from_frame(frame)
        except MalformedMessageError as exc:
            # Unknown or malformed frames are dropped for forward compatibility.
            self.logger.debug("Dropping signaling frame: %s", exc)
            return

        sender = message.sender_client_id
        if message.message_type is MessageType.SDP_OFFER:
            self.emit("sdp_offer", message.payload, sender)
            self._emit_pending_ice_candidates(sender)
        elif message.message_type is MessageType.SDP_ANSWER:
            self.emit("sdp_answer", message.payload, sender)
            self._emit_pending_ice_candidates(sender)
        elif message.message_type is MessageType.ICE_CANDIDATE:
            self._emit_or_queue_ice_candidate(message.payload, sender)
        else:
            self.logger.debug("Ignoring message of type %r", message.message_type)

    def _emit_or_queue_ice_candidate(self, ice_candidate: Any, client_id: Optional[str]) -> None:
        if self._pending_candidates.add(ice_candidate, client_id):
            self.emit("ice_candidate", ice_candidate, client_id)

    def _emit_pending_ice_candidates(self, client_id: Optional[str]) -> None:
        for ice_candidate in self._pending_candidates.mark_sdp_received(client_id):
            self.emit("ice_candidate", ice_candidate, client_id)

    def _on_error(self, error: BaseException) -> None:
        self.emit("error", error)

    def _on_close(self) -> None:
        if self._ready_state is ReadyState.CLOSED:
            return
        self._transition(ReadyState.CLOSED)
        self._cleanup_transport()
        self._pending_candidates.clear()
        self.emit("close")

    def _cleanup_transport(self) -> None:
        transport = self._transport
        if transport is None:
            return
        transport.remove_listener("open", self._on_open)
        transport.remove_listener("message", self._on_message)
        transport.remove_listener("error", self._on_error)
        transport.remove_listener("close", self._on_close)
        self._transport = None


__all__ = ["ReadyState", "SignalingClient"]
