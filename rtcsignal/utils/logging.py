"""
Logging helpers for the signaling client.

The command line entrypoint calls :func:`configure_logging`; library modules
only use module level loggers.  Signed URLs carry the session token and the
signature in their query string, so the client and the transport log them
through :func:`redact_url` only.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union
from urllib.parse import urlsplit, urlunsplit

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: Union[int, str] = logging.INFO, format: Optional[str] = None) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def redact_url(url: str) -> str:
    """Strip the query string (credentials, signature) from ``url`` for logging."""

    parts = urlsplit(url)
    if not parts.query:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "<redacted>", ""))
