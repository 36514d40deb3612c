"""
Wire format of the signaling channel.

Every frame is a JSON object.  Outbound frames carry ``action``,
``messagePayload`` and, for the MASTER, ``recipientClientId``.  Inbound frames
carry ``messageType``, ``messagePayload`` and ``senderClientId``.  The payload
itself is the base64 encoding of a UTF-8 JSON document and is never inspected.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import MalformedMessageError


class MessageType(str, Enum):
    """Kinds of messages relayed by the signaling service."""

    SDP_OFFER = "SDP_OFFER"
    SDP_ANSWER = "SDP_ANSWER"
    ICE_CANDIDATE = "ICE_CANDIDATE"


def to_payload(value: Any) -> Any:
    """
    Convert an SDP or ICE object into a JSON compatible value.
    """

    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    to_json = getattr(value, "to_json", None) or getattr(value, "toJSON", None)
    if callable(to_json):
        return to_json()
    if isinstance(value, Mapping):
        return dict(value)
    return value


def encode_payload(payload: Any) -> str:
    document = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(document.encode("utf-8")).decode("ascii")


def decode_payload(encoded: str) -> Any:
    if not isinstance(encoded, str):
        raise MalformedMessageError("messagePayload must be a string")
    try:
        raw = base64.b64decode(encoded, validate=True)
        return json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise MalformedMessageError(f"undecodable messagePayload: {exc}") from exc


@dataclass(frozen=True, slots=True)
class MessageEnvelope:
    """
    Immutable outbound message.
    """

    action: MessageType
    payload: Any
    recipient_client_id: Optional[str] = None

    def to_dict(self) -> dict:
        message = {
            "action": self.action.value,
            "messagePayload": encode_payload(self.payload),
        }
        if self.recipient_client_id:
            message["recipientClientId"] = self.recipient_client_id
        return message

    def to_frame(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """
    Immutable decoded inbound message.

    ``message_type`` stays a plain string when the service sends a type this
    client does not know about.
    """

    message_type: MessageType | str | None
    payload: Any
    sender_client_id: Optional[str] = None

    @classmethod
    def from_frame(cls, frame: str | bytes) -> "InboundMessage":
        try:
            data = json.loads(frame)
        except (TypeError, ValueError) as exc:
            raise MalformedMessageError(f"frame is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise MalformedMessageError("frame must be a JSON object")

        payload = decode_payload(data.get("messagePayload"))

        raw_type = data.get("messageType")
        try:
            message_type: MessageType | str | None = MessageType(raw_type)
        except ValueError:
            message_type = raw_type

        sender = data.get("senderClientId")
        return cls(
            message_type=message_type,
            payload=payload,
            sender_client_id=sender if isinstance(sender, str) and sender else None,
        )


__all__ = [
    "InboundMessage",
    "MessageEnvelope",
    "MessageType",
    "decode_payload",
    "encode_payload",
    "to_payload",
]
