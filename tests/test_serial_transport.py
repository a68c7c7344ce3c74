import time

import pytest

from vsort.constants import MAX_PENDING_BYTES


class CapturingLogger:
    def __init__(self):
        self.events = []
    def emit(self, event: str, **fields):
        self.events.append((event, fields))


class FakeSerial:
    """Serial stub; inbound bytes are fed by the test through ``feed()``."""
    def __init__(self):
        self.writes = []
        self.closed = False
        self.read_error = None
        self._rx = []

    @property
    def in_waiting(self):
        return sum(len(c) for c in self._rx)

    def feed(self, data: bytes):
        self._rx.append(data)

    def read(self, n=1):
        if self.read_error is not None:
            raise self.read_error
        if self._rx:
            return self._rx.pop(0)
        time.sleep(0.01)
        return b""

    def write(self, data: bytes):
        self.writes.append(data)

    def flush(self):
        pass

    def close(self):
        self.closed = True


def _wait_for(cond, timeout_s=2.0):
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        if cond():
            return True
        time.sleep(0.01)
    return False


def _transport(m, ser=None, **kwargs):
    ser = ser or FakeSerial()
    logger = CapturingLogger()
    t = m.SerialTransport("/dev/fake0", logger=logger, serial_factory=lambda port, baud: ser, **kwargs)
    return t, ser, logger


def test_line_framer_splits_trims_and_buffers():
    m = load_module()
    f = m.LineFramer()
    assert f.feed(b"hel") == []
    assert f.feed(b"lo\r\n\n  \nwor") == ["hello"]
    assert f.pending == b"wor"
    assert f.feed(b"ld\n") == ["world"]
    assert f.pending == b""


def test_line_framer_replaces_undecodable_bytes():
    m = load_module()
    f = m.LineFramer()
    assert f.feed(b"ok\xff\n") == ["ok\ufffd"]


def test_line_framer_discards_oversized_partial_line():
    m = load_module()
    f = m.LineFramer(max_pending=16)
    assert f.feed(b"x" * 10) == []
    assert f.last_dropped == 0
    assert f.feed(b"y" * 10) == []
    assert f.last_dropped == 20
    assert f.pending == b""
    assert f.feed(b"ok\n") == ["ok"]
    assert f.last_dropped == 0


def test_serial_log_keeps_last_100_in_order():
    m = load_module()
    log = m.SerialLog()
    for i in range(150):
        log.append(m.Direction.RECEIVED, f"line {i}")
    entries = log.entries()
    assert len(entries) == 100
    assert [e.payload for e in entries] == [f"line {i}" for i in range(50, 150)]
    assert entries[-1].seq == 150
    assert log.entries(3)[0].payload == "line 147"
    assert log.entries(0) == []


def test_connect_transitions_and_send_terminates_line():
    m = load_module()
    t, ser, logger = _transport(m)
    seen = []
    t.add_status_listener(seen.append)

    assert t.connect() is m.ConnectionStatus.CONNECTED
    assert seen == [m.ConnectionStatus.AWAITING, m.ConnectionStatus.CONNECTED]

    ev = t.send(" 2 ")
    assert ev is not None
    assert ev.direction is m.Direction.SENT
    assert ev.payload == "2"
    assert ser.writes == [b"2\n"]
    t.disconnect()


def test_connect_failure_returns_to_disconnected():
    m = load_module()
    logger = CapturingLogger()

    def boom(port, baud):
        raise OSError("could not open port")

    t = m.SerialTransport("/dev/missing", logger=logger, serial_factory=boom)
    assert t.connect() is m.ConnectionStatus.DISCONNECTED
    assert logger.events[-1][0] == "serial_connect_failed"
    assert "could not open port" in t.log.entries()[-1].payload


def test_connect_without_port_is_reported():
    m = load_module()
    logger = CapturingLogger()
    t = m.SerialTransport(None, logger=logger, serial_factory=lambda p, b: FakeSerial())
    assert t.connect() is m.ConnectionStatus.DISCONNECTED
    assert logger.events[-1] == ("serial_connect_failed", {"error": "no port configured"})


def test_send_when_disconnected_is_skipped():
    m = load_module()
    t, ser, logger = _transport(m)
    assert t.send("1") is None
    assert ser.writes == []
    assert logger.events[-1][0] == "send_skipped"


def test_disconnect_is_idempotent():
    m = load_module()
    t, ser, logger = _transport(m)
    t.connect()
    t.disconnect()
    t.disconnect()
    assert ser.closed is True
    assert t.status is m.ConnectionStatus.DISCONNECTED
    assert [e for e, _ in logger.events].count("serial_disconnected") == 1


def test_received_lines_reach_listeners_and_log():
    m = load_module()
    t, ser, logger = _transport(m, verbose=True)
    got = []
    t.add_line_listener(got.append)
    t.connect()

    ser.feed(b"Action ")
    ser.feed(b"done.\r\nbusy\n")
    assert _wait_for(lambda: len(got) == 2)
    assert [e.payload for e in got] == ["Action done.", "busy"]
    assert all(e.direction is m.Direction.RECEIVED for e in got)
    assert ("serial", {"line": "busy"}) in logger.events
    t.disconnect()


def test_read_error_drops_link():
    m = load_module()
    t, ser, logger = _transport(m)
    t.connect()
    ser.read_error = OSError("device reports readiness to read but returned no data")

    assert _wait_for(lambda: "serial_disconnected" in [e for e, _ in logger.events])
    assert t.status is m.ConnectionStatus.DISCONNECTED
    names = [e for e, _ in logger.events]
    assert "serial_read_error" in names
    assert "serial_disconnected" in names
    assert t.send("1") is None


def test_write_error_drops_link():
    m = load_module()
    t, ser, logger = _transport(m)
    t.connect()

    def fail(data):
        raise OSError("write failed")

    ser.write = fail
    assert t.send("1") is None
    assert t.status is m.ConnectionStatus.DISCONNECTED
    assert "Serial link lost" in t.log.entries()[-1].payload


@pytest.mark.parametrize("line", ["", "   ", "\n"])
def test_empty_command_is_not_sent(line):
    m = load_module()
    t, ser, logger = _transport(m)
    t.connect()
    assert t.send(line) is None
    assert ser.writes == []
    t.disconnect()


def test_runaway_input_without_newline_is_dropped_and_noted():
    m = load_module()
    t, ser, logger = _transport(m)
    t._on_data(b"z" * (MAX_PENDING_BYTES + 1))
    assert ("serial_overflow", {"dropped": MAX_PENDING_BYTES + 1}) in logger.events
    last = t.log.entries()[-1]
    assert last.direction is m.Direction.SYSTEM
    assert "without a line break" in last.payload
    t._on_data(b"Action done.\n")
    assert t.log.entries()[-1].payload == "Action done."


def test_reply_during_write_is_logged_after_the_command():
    m = load_module()
    t, ser, logger = _transport(m)
    t.connect()
    seen = []
    t.add_line_listener(seen.append)

    def write_and_reply(data):
        ser.writes.append(data)
        t._on_data(b"Action done.\n")

    ser.write = write_and_reply
    sent = t.send("2")
    assert sent is not None
    assert len(seen) == 1
    assert seen[0].seq > sent.seq
    assert [e.direction for e in t.log.entries()[-2:]] == [m.Direction.SENT, m.Direction.RECEIVED]
    t.disconnect()


def test_write_error_leaves_a_failure_note():
    m = load_module()
    t, ser, logger = _transport(m)
    t.connect()

    def fail(data):
        raise OSError("write failed")

    ser.write = fail
    assert t.send("3") is None
    payloads = [e.payload for e in t.log.entries()]
    assert "Write of '3' failed: write failed" in payloads
    assert ("serial_write_error", {"command": "3", "error": "write failed"}) in logger.events
