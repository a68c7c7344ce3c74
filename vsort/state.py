from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List

from .constants import DEFAULT_DELAY_MS


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    AWAITING = "awaiting"
    CONNECTED = "connected"


class Direction(str, enum.Enum):
    SENT = "sent"
    RECEIVED = "received"
    SYSTEM = "system"


class Phase(str, enum.Enum):
    IDLE = "idle"
    WAITING_FOR_FRAME = "waiting_for_frame"
    CLASSIFYING = "classifying"
    AWAITING_ACK = "awaiting_ack"
    DELAYING = "delaying"


@dataclass(frozen=True)
class SerialEvent:
    """One entry of the serial log.

    ``seq`` increases by one for every appended entry and is the ordering used to
    decide whether a received line came after a send."""
    seq: int
    timestamp: float
    direction: Direction
    payload: str

    def as_dict(self) -> dict:
        return {
            "seq": self.seq,
            "ts": self.timestamp,
            "direction": self.direction.value,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class Classification:
    label: str
    confidence: float
    index: int

    def as_dict(self) -> dict:
        return {"label": self.label, "confidence": round(float(self.confidence), 4), "index": self.index}


@dataclass
class LoopState:
    """Mutable runtime state of the sorting loop.

    Written only by SortingLoop (under its lock). ``in_flight`` is true strictly
    between requesting a classification and receiving its result or failure;
    ``processing`` mirrors it for display but is cleared on stop."""
    active: bool = False
    in_flight: bool = False
    delay_ms: int = DEFAULT_DELAY_MS
    phase: Phase = Phase.IDLE

    cycle_id: int = 0
    processing: bool = False
    predictions: List[Classification] = field(default_factory=list)

    last_command: str = ""
    cycles_completed: int = 0
    acks_received: int = 0
    last_error: str = ""
