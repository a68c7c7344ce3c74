import json
import socket
import time

import pytest

import vsort.loop as loop_mod
from vsort.control import ControlServer
from vsort.errors import ConfigurationError


class CapturingLogger:
    def __init__(self):
        self.events = []
    def emit(self, event: str, **fields):
        self.events.append((event, fields))


class DummySerial:
    def __init__(self):
        self.writes = []
        self.in_waiting = 0
    def write(self, data: bytes):
        self.writes.append(data.decode(errors="replace"))
    def flush(self):
        pass
    def read(self, n=1):
        time.sleep(0.01)
        return b""
    def close(self):
        pass


class StubClassifier:
    labels = ["red", "green", "blue"]
    def __init__(self, loaded=True):
        self.loaded = loaded
    def is_loaded(self):
        return self.loaded
    def predict(self, frame):
        return []


class StubFrames:
    def is_ready(self):
        return False
    def current_frame(self):
        raise AssertionError("not ready")


def _make_server(monkeypatch, sock_path="", loaded=True):
    m = load_module()
    monkeypatch.setattr(loop_mod, "now_s", lambda: 50.0, raising=True)
    logger = CapturingLogger()
    ser = DummySerial()
    transport = m.SerialTransport("/dev/fake0", logger=logger, serial_factory=lambda p, b: ser)
    loop = m.SortingLoop(
        state=m.LoopState(),
        logger=logger,
        transport=transport,
        classifier=StubClassifier(loaded),
        frame_source=StubFrames(),
        run_inference=lambda fn: fn(),
    )
    return m, ControlServer(loop, sock_path, logger=logger), loop, transport, ser


def _send_cmd(sock_path: str, cmd: str) -> dict:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    s.settimeout(2.0)
    s.connect(sock_path)
    s.sendall((cmd.strip() + "\n").encode())
    data = b""
    while b"\n" not in data:
        chunk = s.recv(4096)
        if not chunk:
            break
        data += chunk
    s.close()
    line = data.split(b"\n", 1)[0].decode(errors="replace").strip()
    return json.loads(line) if line else {}


def test_start_stop_and_status(monkeypatch):
    m, srv, loop, transport, ser = _make_server(monkeypatch)

    assert srv.handle("start") == {"ok": True}
    resp = srv.handle("status")
    assert resp["ok"] is True
    assert resp["state"]["active"] is True
    assert resp["state"]["phase"] == "waiting_for_frame"

    assert srv.handle("stop") == {"ok": True}
    assert loop.state.active is False


def test_start_without_model_is_an_error(monkeypatch):
    m, srv, loop, transport, ser = _make_server(monkeypatch, loaded=False)
    resp = srv.handle("start")
    assert resp["ok"] is False
    assert "model" in resp["error"]


def test_connect_send_and_log(monkeypatch):
    m, srv, loop, transport, ser = _make_server(monkeypatch)

    resp = srv.handle("send 1")
    assert resp["ok"] is False

    resp = srv.handle("connect")
    assert resp == {"ok": True, "status": "connected"}
    assert srv.handle("send 3") == {"ok": True}
    assert ser.writes == ["3\n"]

    log = srv.handle("log 2")["log"]
    assert [e["direction"] for e in log] == ["system", "sent"]
    assert log[-1]["payload"] == "3"

    assert srv.handle("disconnect") == {"ok": True, "status": "disconnected"}


def test_map_accepts_labels_with_spaces(monkeypatch):
    m, srv, loop, transport, ser = _make_server(monkeypatch)
    loop.set_labels(["red", "dark green"])
    resp = srv.handle("map dark green 7")
    assert resp["ok"] is True
    assert resp["mapping"]["dark green"] == "7"
    assert srv.handle("mapping")["mapping"] == {"red": "0", "dark green": "7"}


def test_delay_and_policy(monkeypatch):
    m, srv, loop, transport, ser = _make_server(monkeypatch)
    assert srv.handle("delay 500") == {"ok": True, "delay_ms": 500}
    assert loop.state.delay_ms == 500

    with pytest.raises(ConfigurationError):
        srv.handle("delay 9000")

    resp = srv.handle("policy interval 2000")
    assert resp == {"ok": True, "policy": {"name": "interval", "period_ms": 2000}}
    assert srv.handle("policy ack 250")["policy"] == {"name": "ack", "delay_ms": 250}


@pytest.mark.parametrize("line", ["", "delay", "policy ack", "map red", "log x", "frobnicate"])
def test_bad_commands_are_rejected(monkeypatch, line):
    m, srv, loop, transport, ser = _make_server(monkeypatch)
    resp = srv.handle(line)
    assert resp["ok"] is False
    assert resp["error"]


@pytest.mark.integration
def test_socket_round_trip(monkeypatch, tmp_path):
    sock_path = tmp_path / "vsort.sock"
    m, srv, loop, transport, ser = _make_server(monkeypatch, sock_path=str(sock_path))
    srv.start()
    try:
        deadline = time.time() + 2.0
        while time.time() < deadline and not sock_path.exists():
            time.sleep(0.01)

        resp = _send_cmd(str(sock_path), "start")
        assert resp.get("ok") is True
        assert loop.state.active is True

        # Errors from the loop come back as a JSON error, not a dropped connection.
        resp = _send_cmd(str(sock_path), "delay 99999")
        assert resp["ok"] is False
        assert "delay_ms" in resp["error"]
    finally:
        srv.stop()
    assert not sock_path.exists()
