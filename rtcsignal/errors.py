"""
Exception hierarchy for the signaling client.
"""

from __future__ import annotations


class SignalingError(RuntimeError):
    """Base class for signaling related errors."""


class ConfigurationError(SignalingError, ValueError):
    """Raised when required configuration is missing or illegal."""


class RecipientValidationError(ConfigurationError):
    """Raised when a message recipient does not match the client role."""


class InvalidStateError(SignalingError):
    """Raised when an operation is not legal in the current connection state."""


class SigningError(SignalingError, ValueError):
    """Raised when a request cannot be signed because its endpoint is malformed."""


class MalformedMessageError(SignalingError, ValueError):
    """Raised when an inbound frame cannot be decoded."""


class TransportError(SignalingError):
    """Raised when the underlying transport is used incorrectly."""


__all__ = [
    "ConfigurationError",
    "InvalidStateError",
    "MalformedMessageError",
    "RecipientValidationError",
    "SignalingError",
    "SigningError",
    "TransportError",
]
