"""Utility helpers for the signaling client."""

from .logging import configure_logging, redact_url
from .validation import validate_value_nil, validate_value_non_nil

__all__ = ["configure_logging", "redact_url", "validate_value_nil", "validate_value_non_nil"]
