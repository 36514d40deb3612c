"""
Value presence checks shared by the configuration models.
"""

from __future__ import annotations

from typing import Any

from ..errors import ConfigurationError


def is_nil(value: Any) -> bool:
    return value is None or value == ""


def validate_value_non_nil(value: Any, value_name: str) -> None:
    """
    Raise :class:`ConfigurationError` when ``value`` is ``None`` or an empty string.
    """

    if value is None:
        raise ConfigurationError(f"{value_name} cannot be None")
    if value == "":
        raise ConfigurationError(f"{value_name} cannot be empty")


def validate_value_nil(value: Any, value_name: str) -> None:
    if not is_nil(value):
        raise ConfigurationError(f"{value_name} should be None")
