"""
Per-peer buffering of ICE candidates that arrive before the peer's SDP.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

LOG = logging.getLogger(__name__)

# Key used when the sender is not identified, i.e. a VIEWER hearing from its MASTER.
DEFAULT_CLIENT_ID = "MASTER"


class PendingIceCandidates:
    """
    Ledger of candidates waiting for an SDP offer or answer from their sender.

    A client id leaves the pending map exactly when it enters the SDP-seen set;
    after that its candidates are never buffered again.
    """

    def __init__(self, max_pending: Optional[int] = None) -> None:
        if max_pending is not None and max_pending < 1:
            raise ValueError("max_pending must be positive")
        self.max_pending = max_pending
        self._pending: Dict[str, Deque[Any]] = {}
        self._sdp_seen: Set[str] = set()

    @staticmethod
    def key_for(client_id: Optional[str]) -> str:
        return client_id or DEFAULT_CLIENT_ID

    def has_received_sdp(self, client_id: Optional[str]) -> bool:
        return self.key_for(client_id) in self._sdp_seen

    def pending_for(self, client_id: Optional[str]) -> List[Any]:
        return list(self._pending.get(self.key_for(client_id), ()))

    def add(self, candidate: Any, client_id: Optional[str]) -> bool:
        """
        Record ``candidate`` from ``client_id``.

        Returns ``True`` when the candidate may be delivered right away and
        ``False`` when it was buffered.
        """

        key = self.key_for(client_id)
        if key in self._sdp_seen:
            return True

        queue = self._pending.get(key)
        if queue is None:
            queue = self._pending[key] = deque()
        if self.max_pending is not None and len(queue) >= self.max_pending:
            queue.popleft()
            LOG.warning(
                "Pending ICE candidate buffer for %s is full (%d); dropping the oldest candidate.",
                key,
                self.max_pending,
            )
        queue.append(candidate)
        return False

    def mark_sdp_received(self, client_id: Optional[str]) -> List[Any]:
        """
        Mark ``client_id`` as having sent its SDP and release its buffered candidates.
        """

        key = self.key_for(client_id)
        self._sdp_seen.add(key)
        released = self._pending.pop(key, None)
        if not released:
            return []
        LOG.debug("Releasing %d buffered ICE candidates from %s", len(released), key)
        return list(released)

    def clear(self) -> None:
        self._pending.clear()
        self._sdp_seen.clear()

    def __len__(self) -> int:
        return sum(len(queue) for queue in self._pending.values())


__all__ = ["DEFAULT_CLIENT_ID", "PendingIceCandidates"]
