from __future__ import annotations

import collections
import threading
import time
from typing import Callable, List, Optional

try:
    import serial  # pyserial
except ImportError:  # pragma: no cover
    serial = None

from .constants import DEFAULT_BAUD, MAX_PENDING_BYTES, SERIAL_LOG_SIZE, SERIAL_READ_TIMEOUT_S
from .errors import ConfigurationError, TransportError
from .logging import JsonLogger
from .state import ConnectionStatus, Direction, SerialEvent


class LineFramer:
    """Turns an arbitrary chunked byte stream into complete text lines.

    Bytes are buffered until a newline arrives; each line is decoded, trimmed
    and dropped if empty. A partial trailing line stays buffered, up to
    ``max_pending`` bytes; beyond that it is discarded and counted in
    ``last_dropped``."""
    def __init__(self, encoding: str = "utf-8", max_pending: int = MAX_PENDING_BYTES):
        self.encoding = encoding
        self.max_pending = int(max_pending)
        self.last_dropped = 0
        self._buf = b""

    @property
    def pending(self) -> bytes:
        return self._buf

    def reset(self):
        self._buf = b""

    def feed(self, data: bytes) -> List[str]:
        """Add a chunk and return the lines it completed, in order."""
        self.last_dropped = 0
        if not data:
            return []
        self._buf += data
        lines = []
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                break
            raw, self._buf = self._buf[:idx], self._buf[idx + 1:]
            text = raw.decode(self.encoding, errors="replace").strip()
            if text:
                lines.append(text)
        if len(self._buf) > self.max_pending:
            self.last_dropped = len(self._buf)
            self._buf = b""
        return lines


class SerialLog:
    """Bounded, append-only log of serial traffic and system notes.

    Keeps the most recent ``maxlen`` entries; older ones are evicted first.
    Every entry gets the next sequence number, including evicted ones, so
    sequence numbers order events across the whole session."""
    def __init__(self, maxlen: int = SERIAL_LOG_SIZE):
        self._events = collections.deque(maxlen=maxlen)
        self._seq = 0
        self._lock = threading.Lock()

    def append(self, direction: Direction, payload: str) -> SerialEvent:
        with self._lock:
            self._seq += 1
            ev = SerialEvent(seq=self._seq, timestamp=time.time(), direction=direction, payload=payload)
            self._events.append(ev)
            return ev

    def system(self, text: str) -> SerialEvent:
        return self.append(Direction.SYSTEM, text)

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq

    def entries(self, n: Optional[int] = None) -> List[SerialEvent]:
        with self._lock:
            events = list(self._events)
        if n is not None:
            events = events[-n:] if n > 0 else []
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class SerialThread(threading.Thread):
    """Background serial reader.

    Reads whatever bytes are available and hands them to ``on_data``. A read
    failure is reported once through ``on_error`` and ends the thread, unless
    the thread was asked to stop (closing the port under a blocked read is
    expected then)."""
    def __init__(self, ser, on_data: Callable[[bytes], None], on_error: Callable[[Exception], None],
                 stop_evt: threading.Event):
        super().__init__(daemon=True, name="vsort-serial-reader")
        self.ser = ser
        self.on_data = on_data
        self.on_error = on_error
        self.stop_evt = stop_evt

    def run(self):
        """Thread entry point. Reads until stopped or the port fails."""
        while not self.stop_evt.is_set():
            try:
                waiting = getattr(self.ser, "in_waiting", 0) or 1
                data = self.ser.read(waiting)
            except Exception as e:
                if not self.stop_evt.is_set():
                    self.on_error(e)
                break
            if data:
                self.on_data(data)


class SerialTransport:
    """Line-oriented serial link to the actuator.

    Owns the port, the connection status and the serial log. Outbound commands
    are written as ``<line>\\n``; inbound bytes are framed into trimmed,
    non-empty lines, appended to the log as RECEIVED events and published to
    line listeners on the reader thread. Listeners must not block."""
    def __init__(
        self,
        port: Optional[str],
        baud: int = DEFAULT_BAUD,
        logger: Optional[JsonLogger] = None,
        log: Optional[SerialLog] = None,
        serial_factory: Optional[Callable] = None,
        verbose: bool = False,
    ):
        """
        Args:
            port: Serial device (e.g. /dev/ttyACM0). May be set later via connect().
            baud: Baud rate; framing is always 8N1.
            serial_factory: Optional ``factory(port, baud)`` returning an open
                serial-like object. Defaults to pyserial.
        """
        self.port = port
        self.baud = int(baud)
        self.logger = logger or JsonLogger()
        self.log = log or SerialLog()
        self.verbose = bool(verbose)
        self._serial_factory = serial_factory

        self._status = ConnectionStatus.DISCONNECTED
        self._ser = None
        self._ser_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._rx_lock = threading.RLock()
        self._framer = LineFramer()
        self._reader: Optional[SerialThread] = None
        self._reader_stop: Optional[threading.Event] = None

        self._line_listeners: List[Callable[[SerialEvent], None]] = []
        self._status_listeners: List[Callable[[ConnectionStatus], None]] = []

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    def add_line_listener(self, cb: Callable[[SerialEvent], None]):
        self._line_listeners.append(cb)

    def add_status_listener(self, cb: Callable[[ConnectionStatus], None]):
        self._status_listeners.append(cb)

    def _set_status(self, status: ConnectionStatus):
        if status is self._status:
            return
        self._status = status
        for cb in list(self._status_listeners):
            cb(status)

    # ---------------- Connection ----------------

    def _open(self):
        if self._serial_factory is not None:
            return self._serial_factory(self.port, self.baud)
        if serial is None:
            raise ConfigurationError("pyserial is not installed. Install it with: pip install pyserial")
        return serial.Serial(
            self.port,
            self.baud,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=SERIAL_READ_TIMEOUT_S,
        )

    def connect(self, port: Optional[str] = None) -> ConnectionStatus:
        """Open the port and start the reader. Returns the resulting status."""
        with self._state_lock:
            if self._status is ConnectionStatus.CONNECTED:
                return self._status
            if port:
                self.port = port
            if not self.port:
                self.logger.emit("serial_connect_failed", error="no port configured")
                self.log.system("Failed to connect: no serial port configured.")
                return self._status

            self._set_status(ConnectionStatus.AWAITING)
            try:
                ser = self._open()
            except (OSError, ValueError, ConfigurationError) as e:
                self._set_status(ConnectionStatus.DISCONNECTED)
                self.logger.emit("serial_connect_failed", port=self.port, error=str(e))
                self.log.system(f"Failed to connect to {self.port}: {e}")
                return self._status

            self._ser = ser
            self._framer.reset()
            self._reader_stop = threading.Event()
            self._reader = SerialThread(ser, self._on_data, self._on_read_error, self._reader_stop)
            self._reader.start()
            self._set_status(ConnectionStatus.CONNECTED)
            self.logger.emit("serial_connected", port=self.port, baud=self.baud)
            self.log.system(f"Connected to {self.port} at {self.baud} baud.")
            return self._status

    def _teardown(self):
        if self._reader_stop is not None:
            self._reader_stop.set()
        ser, self._ser = self._ser, None
        if ser is not None:
            try:
                ser.close()
            except OSError as e:
                self.logger.emit("serial_close_error", error=str(e))
        reader, self._reader = self._reader, None
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1.0)

    def disconnect(self):
        """Close the port. Idempotent."""
        with self._state_lock:
            if self._ser is None and self._status is ConnectionStatus.DISCONNECTED:
                return
            self._teardown()
            self._set_status(ConnectionStatus.DISCONNECTED)
            self.logger.emit("serial_disconnected", port=self.port, reason="requested")
            self.log.system("Disconnected.")

    def _on_io_failure(self, op: str, error: Exception):
        with self._state_lock:
            if self._status is not ConnectionStatus.CONNECTED:
                return
            self._teardown()
            self._set_status(ConnectionStatus.DISCONNECTED)
            self.logger.emit("serial_disconnected", port=self.port, reason=f"{op}_error", error=str(error))
            self.log.system(f"Serial link lost ({op}): {error}")

    # ---------------- Traffic ----------------

    def send(self, line: str) -> Optional[SerialEvent]:
        """Write one command line.

        Returns the SENT log event, or None if nothing was written (not
        connected, empty command, or write failure)."""
        line = str(line).strip()
        if not line:
            return None
        ser = self._ser
        if self._status is not ConnectionStatus.CONNECTED or ser is None:
            self.logger.emit("send_skipped", reason="disconnected", command=line)
            return None
        # The SENT entry must take its sequence number before any reply to the
        # write can be framed, so append and write under the receive lock.
        with self._rx_lock:
            ev = self.log.append(Direction.SENT, line)
            try:
                self._write(ser, line)
                return ev
            except TransportError as e:
                error = e
        self.logger.emit("serial_write_error", command=line, error=str(error))
        self.log.system(f"Write of {line!r} failed: {error}")
        self._on_io_failure("write", error)
        return None

    def _write(self, ser, line: str):
        # Writes can come from the loop and the control socket; keep lines whole.
        try:
            with self._ser_lock:
                ser.write((line + "\n").encode("utf-8"))
                ser.flush()
        except OSError as e:
            raise TransportError(str(e)) from e

    def _on_data(self, data: bytes):
        with self._rx_lock:
            lines = self._framer.feed(data)
            if self._framer.last_dropped:
                dropped = self._framer.last_dropped
                self.logger.emit("serial_overflow", dropped=dropped)
                self.log.system(f"Discarded {dropped} bytes without a line break")
            for text in lines:
                ev = self.log.append(Direction.RECEIVED, text)
                if self.verbose:
                    self.logger.emit("serial", line=text)
                for cb in list(self._line_listeners):
                    cb(ev)

    def _on_read_error(self, error: Exception):
        self.logger.emit("serial_read_error", error=str(error))
        self._on_io_failure("read", error)
