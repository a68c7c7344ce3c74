from __future__ import annotations

from typing import Optional

from .constants import ACK_MARKER
from .state import Direction, SerialEvent


class AckWatcher:
    """One-shot acknowledgement detector.

    ``arm()`` is called with the cycle id and the log sequence number of the
    command just sent. The first RECEIVED line after that send whose text
    contains the marker fires the watcher, which then disarms itself until the
    next send. Lines with a sequence number at or below the send are ignored,
    so a late "Action done." from an earlier cycle that was already queued when
    the command went out cannot advance the new cycle.
    """
    def __init__(self, marker: str = ACK_MARKER):
        self.marker = marker
        self._cycle_id: Optional[int] = None
        self._after_seq = 0

    @property
    def armed(self) -> bool:
        return self._cycle_id is not None

    @property
    def cycle_id(self) -> Optional[int]:
        return self._cycle_id

    def arm(self, cycle_id: int, after_seq: int):
        self._cycle_id = cycle_id
        self._after_seq = after_seq

    def disarm(self):
        self._cycle_id = None

    def matches(self, event: SerialEvent) -> bool:
        return event.direction is Direction.RECEIVED and self.marker in event.payload

    def offer(self, event: SerialEvent) -> Optional[int]:
        """Feed one serial event. Returns the armed cycle id if this event fires the watcher."""
        if self._cycle_id is None:
            return None
        if event.seq <= self._after_seq or not self.matches(event):
            return None
        fired = self._cycle_id
        self._cycle_id = None
        return fired
