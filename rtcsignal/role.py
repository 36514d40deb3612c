"""
Signaling client roles.
"""

from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    """
    Role a client plays on a signaling channel.

    The MASTER is the long-lived peer that answers any number of VIEWERs; each
    VIEWER talks to the single MASTER of the channel.
    """

    MASTER = "MASTER"
    VIEWER = "VIEWER"


__all__ = ["Role"]
