from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .constants import DEFAULT_DELAY_MS, MAX_DELAY_MS, MIN_DELAY_MS, POLICY_ACK, POLICY_INTERVAL
from .errors import ConfigurationError

MIN_PERIOD_MS = 100
MAX_PERIOD_MS = 60000


def validate_ms(value, name: str, lo: int = MIN_DELAY_MS, hi: int = MAX_DELAY_MS) -> int:
    try:
        ms = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer number of milliseconds, got {value!r}") from None
    if ms < lo or ms > hi:
        raise ConfigurationError(f"{name} must be between {lo} and {hi} ms, got {ms}")
    return ms


@dataclass(frozen=True)
class AckGated:
    """Wait for the actuator's acknowledgement, then ``delay_ms``, then classify again."""
    delay_ms: int = DEFAULT_DELAY_MS

    name = POLICY_ACK

    def describe(self) -> dict:
        return {"name": self.name, "delay_ms": self.delay_ms}


@dataclass(frozen=True)
class FixedInterval:
    """Classify every ``period_ms`` after the previous result; acknowledgements are ignored."""
    period_ms: int

    name = POLICY_INTERVAL

    def describe(self) -> dict:
        return {"name": self.name, "period_ms": self.period_ms}


TriggerPolicy = Union[AckGated, FixedInterval]


def make_policy(name: str, delay_ms=DEFAULT_DELAY_MS, period_ms=None) -> TriggerPolicy:
    name = (name or POLICY_ACK).strip().lower()
    if name == POLICY_ACK:
        return AckGated(validate_ms(delay_ms, "delay_ms"))
    if name == POLICY_INTERVAL:
        if period_ms is None:
            raise ConfigurationError("interval policy requires period_ms")
        return FixedInterval(validate_ms(period_ms, "period_ms", MIN_PERIOD_MS, MAX_PERIOD_MS))
    raise ConfigurationError(f"unknown trigger policy: {name!r} (expected '{POLICY_ACK}' or '{POLICY_INTERVAL}')")
