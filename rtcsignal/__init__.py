"""
Signaling channel client for WebRTC peers.

A MASTER and its VIEWERs exchange SDP offers/answers and ICE candidates through
a relay service over a signed WebSocket connection.  The package provides the
client state machine (:class:`SignalingClient`) and the SigV4 URL signer
(:class:`SigV4RequestSigner`); media negotiation is left to the caller's peer
connection.
"""

from __future__ import annotations

from .client import ReadyState, SignalingClient
from .config import Credentials, SignalingClientConfig, load_config
from .errors import (
    ConfigurationError,
    InvalidStateError,
    RecipientValidationError,
    SignalingError,
    SigningError,
    TransportError,
)
from .role import Role
from .signer import SigV4RequestSigner

VERSION = "1.0.2"

__all__ = [
    "ConfigurationError",
    "Credentials",
    "InvalidStateError",
    "ReadyState",
    "RecipientValidationError",
    "Role",
    "SigV4RequestSigner",
    "SignalingClient",
    "SignalingClientConfig",
    "SignalingError",
    "SigningError",
    "TransportError",
    "VERSION",
    "load_config",
]
