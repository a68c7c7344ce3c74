from __future__ import annotations


class SorterError(Exception):
    """Base class for errors raised by the sorting controller."""


class ConfigurationError(SorterError):
    """Something required is missing or invalid (model not loaded, bad config value)."""


class TransientIOError(SorterError):
    """A collaborator is not ready yet (e.g. the camera has no frame). Retried by polling."""


class InferenceError(SorterError):
    """The classifier could not produce a result for a frame."""


class TransportError(SorterError):
    """Serial send/receive failure."""
