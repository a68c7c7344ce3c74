"""vsort package for vision-sorter."""

from .state import LoopState
from .loop import SortingLoop
from .serialio import SerialTransport
from .mapping import CommandMapping, resolve_command
from .ack import AckWatcher

__all__ = ["LoopState", "SortingLoop", "SerialTransport", "CommandMapping", "resolve_command", "AckWatcher"]
