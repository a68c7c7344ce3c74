from __future__ import annotations

import threading
import time
from typing import Optional

try:
    import cv2
except ImportError:  # pragma: no cover
    cv2 = None

from .constants import CAMERA_MAX_MISSES, CAMERA_STALE_S
from .errors import ConfigurationError, TransientIOError
from .logging import JsonLogger
from .util import now_s


class OpenCVFrameSource:
    """Camera capture that keeps only the newest frame.

    A daemon thread reads frames continuously so ``current_frame()`` never
    blocks on the device. The source is ready once a frame arrives, and stops
    being ready when reads keep failing (``max_misses`` in a row) or the newest
    frame is older than ``stale_after_s``. A dead camera must never hand the
    classifier the last picture it took.
    """
    def __init__(self, index: int = 0, width: Optional[int] = None, height: Optional[int] = None,
                 logger: Optional[JsonLogger] = None, max_misses: int = CAMERA_MAX_MISSES,
                 stale_after_s: float = CAMERA_STALE_S):
        self.index = int(index)
        self.width = width
        self.height = height
        self.logger = logger or JsonLogger()
        self.max_misses = max(1, int(max_misses))
        self.stale_after_s = float(stale_after_s)
        self._cap = None
        self._frame = None
        self._frame_ts: Optional[float] = None
        self._misses = 0
        self._lock = threading.Lock()
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if cv2 is None:
            raise ConfigurationError("OpenCV is not installed (pip install opencv-python-headless)")
        cap = cv2.VideoCapture(self.index)
        if not cap.isOpened():
            cap.release()
            raise ConfigurationError(f"cannot open camera {self.index}")
        if self.width:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(self.width))
        if self.height:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(self.height))
        self._cap = cap
        self._misses = 0
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._grab_loop, daemon=True, name="vsort-camera")
        self._thread.start()
        self.logger.emit("camera_started", index=self.index)
        return self

    def _grab_loop(self):
        while not self._stop_evt.is_set():
            if not self._grab_once():
                time.sleep(0.05)

    def _grab_once(self) -> bool:
        """Read one frame from the device. Returns False if the read failed."""
        ok, frame = self._cap.read()
        if not ok or frame is None:
            self._misses += 1
            # One event per streak of failed reads.
            if self._misses == 1:
                self.logger.emit("camera_error", index=self.index, error="read failed")
            if self._misses == self.max_misses:
                with self._lock:
                    self._frame = None
                    self._frame_ts = None
                self.logger.emit("camera_lost", index=self.index, misses=self._misses)
            return False
        if self._misses >= self.max_misses:
            self.logger.emit("camera_recovered", index=self.index)
        self._misses = 0
        with self._lock:
            self._frame = frame
            self._frame_ts = now_s()
        return True

    def _fresh_frame(self):
        with self._lock:
            frame, ts = self._frame, self._frame_ts
        if frame is None or ts is None:
            return None
        if now_s() - ts > self.stale_after_s:
            return None
        return frame

    def is_ready(self) -> bool:
        return self._fresh_frame() is not None

    def current_frame(self):
        frame = self._fresh_frame()
        if frame is None:
            raise TransientIOError("no current frame")
        return frame.copy()

    def stop(self):
        self._stop_evt.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
        if self._cap is not None:
            self._cap.release()
            self._cap = None
        with self._lock:
            self._frame = None
            self._frame_ts = None
