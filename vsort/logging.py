from __future__ import annotations

import enum
import json
import sys
import threading
import time
from typing import Optional, TextIO


class JsonLogger:
    """Minimal structured logger.

    Emits one line per event (loop transitions, commands, serial link changes) so
    logs are easy to grep and machine-parse. Safe to call from the loop, the
    serial reader and the control socket thread."""
    def __init__(self, enable_json: bool = False, stream: Optional[TextIO] = None):
        """Create a logger.

        Args:
            enable_json: Emit JSON objects instead of ``[time] event k=v`` text.
            stream: File-like object for output (defaults to stdout at emit time).
        """
        self.enable_json = enable_json
        self._stream = stream
        self._lock = threading.Lock()

    @staticmethod
    def _plain(v):
        if isinstance(v, enum.Enum):
            return v.value
        if isinstance(v, float):
            return round(v, 4)
        return v

    def emit(self, event: str, **fields):
        """Emit an event with a name and optional key/value fields."""
        t = time.time()
        ts_iso = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(t)) + f'.{int((t - int(t)) * 1000):03d}'
        fields = {k: self._plain(v) for k, v in fields.items()}
        if self.enable_json:
            line = json.dumps({"ts": t, "ts_iso": ts_iso, "event": event, **fields}, sort_keys=True, default=str)
        else:
            line = f"[{ts_iso}] {event}"
            if fields:
                line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        out = self._stream or sys.stdout
        with self._lock:
            print(line, file=out, flush=True)
