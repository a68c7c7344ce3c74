#!/usr/bin/env python3
#
# Vision sorter
#
# Closes the loop between a camera, an image classifier and a serial-attached
# actuator (e.g. an Arduino driving a sorting arm). Each cycle classifies the
# current frame, sends the mapped command token, then waits for the actuator
# to print "Action done." before settling and classifying again.
#
# The implementation lives in the vsort package; this script is the
# stand-alone entry point.
#

from __future__ import annotations

from vsort.ack import AckWatcher
from vsort.cli import main
from vsort.config import build_arg_parser, parse_args, resolved_config_dict
from vsort.constants import ACK_MARKER, USAGE_EXAMPLES, VERSION
from vsort.logging import JsonLogger
from vsort.loop import SortingLoop
from vsort.mapping import CommandMapping, resolve_command
from vsort.serialio import LineFramer, SerialLog, SerialTransport
from vsort.state import Classification, ConnectionStatus, Direction, LoopState, Phase

__all__ = [
    "ACK_MARKER",
    "USAGE_EXAMPLES",
    "VERSION",
    "AckWatcher",
    "Classification",
    "CommandMapping",
    "ConnectionStatus",
    "Direction",
    "JsonLogger",
    "LineFramer",
    "LoopState",
    "Phase",
    "SerialLog",
    "SerialTransport",
    "SortingLoop",
    "build_arg_parser",
    "main",
    "parse_args",
    "resolve_command",
    "resolved_config_dict",
]


if __name__ == "__main__":
    raise SystemExit(main())
