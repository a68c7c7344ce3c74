from __future__ import annotations

import functools
import queue
import threading
from typing import Callable, Iterable, List, Optional

from .ack import AckWatcher
from .constants import ERROR_RETRY_S, FRAME_POLL_S, MSG_CLASSIFYING, MSG_STARTED, MSG_STOPPED, MSG_WAITING_FRAME
from .errors import ConfigurationError, TransientIOError
from .logging import JsonLogger
from .mapping import CommandMapping
from .policy import AckGated, FixedInterval, TriggerPolicy, validate_ms
from .serialio import SerialTransport
from .state import Classification, ConnectionStatus, LoopState, Phase, SerialEvent
from .util import now_s


def _spawn(fn: Callable[[], None]):
    threading.Thread(target=fn, daemon=True, name="vsort-inference").start()


class SortingLoop:
    """Closed-loop sorting controller.

    Runs sense -> classify -> send command -> wait for "Action done." ->
    delay -> repeat while active. The transport, classifier and frame source
    are owned elsewhere; the loop only calls their operations.

    All state changes happen under one lock. Serial lines, link status changes
    and inference outcomes arrive on ``_events`` and are applied by a single
    consumer (the thread started by launch(), or pump() in tests). Frame polls
    and delays are deadlines checked by ``_tick()``.
    """
    def __init__(
        self,
        state: LoopState,
        logger: JsonLogger,
        transport: SerialTransport,
        classifier,
        frame_source,
        mapping: Optional[CommandMapping] = None,
        policy: Optional[TriggerPolicy] = None,
        notifier=None,
        run_inference: Optional[Callable[[Callable[[], None]], None]] = None,
        frame_poll_s: float = FRAME_POLL_S,
        error_retry_s: float = ERROR_RETRY_S,
    ):
        """
        Args:
            classifier: Object with ``is_loaded()``, ``predict(frame)`` and ``labels``.
            frame_source: Object with ``is_ready()`` and ``current_frame()``.
            run_inference: Called with a zero-argument callable that performs one
                prediction and posts its outcome; defaults to a daemon thread.
            error_retry_s: Minimum wait before the next cycle after a failed
                classification.
        """
        self.state = state
        self.logger = logger
        self.transport = transport
        self.classifier = classifier
        self.frame_source = frame_source
        self.mapping = mapping if mapping is not None else CommandMapping(getattr(classifier, "labels", ()))
        self.policy: TriggerPolicy = policy or AckGated(state.delay_ms)
        if isinstance(self.policy, AckGated):
            self.state.delay_ms = self.policy.delay_ms
        self.notifier = notifier
        self.frame_poll_s = float(frame_poll_s)
        self.error_retry_s = float(error_retry_s)
        self.watcher = AckWatcher()

        self._run_inference = run_inference or _spawn
        self._lock = threading.RLock()
        self._events: queue.Queue = queue.Queue()
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._next_poll_ts: Optional[float] = None
        self._next_cycle_ts: Optional[float] = None
        self._cycle_pending = False
        # Cycle whose result this activation will accept; cleared by stop().
        self._live_cycle: Optional[int] = None
        self._error_streak = 0
        self._link_was_up = transport.connected

        transport.add_line_listener(self._enqueue_line)
        transport.add_status_listener(self._enqueue_status)

    # ---------------- Operator operations ----------------

    def _require_model(self):
        if not self.classifier.is_loaded():
            raise ConfigurationError("Please load a model first.")

    def start(self) -> bool:
        """Activate sorting. Returns False (and stays idle) if no model is loaded."""
        with self._lock:
            if self.state.active:
                return True
            try:
                self._require_model()
            except ConfigurationError as e:
                self.logger.emit("start_rejected", reason="model_not_loaded")
                self.transport.log.system(str(e))
                return False
            self.state.active = True
            self.state.last_error = ""
            self._error_streak = 0
            self.transport.log.system(MSG_STARTED)
            self.logger.emit("sorting_started", policy=self.policy.name, delay_ms=self.state.delay_ms)
            self._begin_cycle()
            return True

    def stop(self):
        """Deactivate sorting. Idempotent.

        Pending polls and delays are cancelled and the watcher disarmed. An
        inference already running is left to finish; its result is discarded.
        """
        with self._lock:
            if not self.state.active:
                return
            self.state.active = False
            self.state.phase = Phase.IDLE
            self.state.predictions = []
            self.state.processing = False
            self._next_poll_ts = None
            self._next_cycle_ts = None
            self._cycle_pending = False
            self._live_cycle = None
            self.watcher.disarm()
            self.transport.log.system(MSG_STOPPED)
            self.logger.emit("sorting_stopped", cycles=self.state.cycles_completed)

    def trigger(self) -> bool:
        """Run a cycle now, abandoning any ack wait or delay.

        This is the way out of the AWAITING_ACK dead end after a failed send.
        Rejected while inactive or while a classification is in flight.
        """
        with self._lock:
            if not self.state.active:
                self.logger.emit("trigger_rejected", reason="inactive")
                return False
            if self.state.in_flight:
                self.logger.emit("trigger_rejected", reason="in_flight", cycle=self.state.cycle_id)
                return False
            self.watcher.disarm()
            self._next_cycle_ts = None
            self.logger.emit("triggered", phase=self.state.phase)
            self._begin_cycle()
            return True

    def set_delay_ms(self, delay_ms) -> int:
        """Set the settle delay applied after each acknowledgement (0-5000 ms)."""
        ms = validate_ms(delay_ms, "delay_ms")
        with self._lock:
            self.state.delay_ms = ms
            if isinstance(self.policy, AckGated):
                self.policy = AckGated(ms)
            self.logger.emit("delay_changed", delay_ms=ms)
        return ms

    def set_policy(self, policy: TriggerPolicy):
        with self._lock:
            self.policy = policy
            if isinstance(policy, AckGated):
                self.state.delay_ms = policy.delay_ms
            self.logger.emit("policy_changed", **policy.describe())
            if isinstance(policy, FixedInterval) and self.state.phase is Phase.AWAITING_ACK:
                self.watcher.disarm()
                self._schedule_next(policy.period_ms / 1000.0)

    def set_labels(self, labels: Iterable[str]):
        self.mapping.set_labels(labels)
        self.logger.emit("labels_loaded", count=len(self.mapping))

    def set_command(self, label: str, command: str):
        self.mapping.set(label, command)
        self.logger.emit("mapping_changed", label=label, command=command)

    def send_manual(self, command: str) -> bool:
        """Send an ad-hoc command. Does not arm the acknowledgement watcher."""
        ev = self.transport.send(command)
        self.logger.emit("manual_command", command=command, ok=ev is not None)
        return ev is not None

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "active": self.state.active,
                "phase": self.state.phase.value,
                "in_flight": self.state.in_flight,
                "processing": self.state.processing,
                "cycle_id": self.state.cycle_id,
                "delay_ms": self.state.delay_ms,
                "policy": self.policy.describe(),
                "predictions": [p.as_dict() for p in self.state.predictions],
                "last_command": self.state.last_command,
                "cycles_completed": self.state.cycles_completed,
                "acks_received": self.state.acks_received,
                "last_error": self.state.last_error,
                "ack_armed": self.watcher.armed,
                "model_loaded": bool(self.classifier.is_loaded()),
                "serial_status": self.transport.status.value,
                "serial_port": self.transport.port,
            }

    # ---------------- Cycle ----------------

    def _frame_ready(self) -> bool:
        return bool(self.frame_source.is_ready())

    def _wait_for_frame(self):
        if self.state.phase is not Phase.WAITING_FOR_FRAME:
            self.state.phase = Phase.WAITING_FOR_FRAME
            self.transport.log.system(MSG_WAITING_FRAME)
            self.logger.emit("waiting_for_frame")
        self._next_poll_ts = now_s() + self.frame_poll_s

    def _begin_cycle(self):
        if not self.state.active:
            return
        if self.state.in_flight:
            # Only reachable after a stop/start while the old request is still running.
            self._cycle_pending = True
            self.state.phase = Phase.CLASSIFYING
            self.state.processing = True
            self.logger.emit("cycle_queued", behind=self.state.cycle_id)
            return
        self._next_cycle_ts = None
        if not self._frame_ready():
            self._wait_for_frame()
            return
        self._classify()

    def _classify(self):
        try:
            frame = self.frame_source.current_frame()
        except TransientIOError:
            self._wait_for_frame()
            return
        self._next_poll_ts = None
        self.state.cycle_id += 1
        cycle = self.state.cycle_id
        self._live_cycle = cycle
        self.state.in_flight = True
        self.state.processing = True
        self.state.phase = Phase.CLASSIFYING
        self.transport.log.system(MSG_CLASSIFYING)
        self.logger.emit("classifying", cycle=cycle)
        self._run_inference(functools.partial(self._infer, cycle, frame))

    def _infer(self, cycle: int, frame):
        """Runs off the loop thread; the outcome goes back through the event queue."""
        try:
            preds = list(self.classifier.predict(frame))
        except Exception as e:
            self._events.put(("error", cycle, e))
        else:
            self._events.put(("result", cycle, preds))

    def _finish_inference(self, cycle: int) -> bool:
        """Clear the in-flight flag. Returns False if the outcome is stale and was discarded."""
        self.state.in_flight = False
        self.state.processing = False
        if self.state.active and cycle == self._live_cycle:
            return True
        self.logger.emit("result_discarded", cycle=cycle)
        if self._cycle_pending and self.state.active:
            self._cycle_pending = False
            self._begin_cycle()
        return False

    def _on_result(self, cycle: int, preds: List[Classification]):
        if not self._finish_inference(cycle):
            return
        if self._error_streak and self.notifier is not None:
            self.notifier.clear("inference")
        self._error_streak = 0
        self.state.predictions = preds
        self.state.cycles_completed += 1
        if not preds:
            self.logger.emit("classification", cycle=cycle, label=None)
            self._advance(sent=None)
            return

        top = preds[0]
        command = self.mapping.resolve(top.label, top.index)
        self.logger.emit(
            "classification",
            cycle=cycle,
            label=top.label,
            confidence=top.confidence,
            index=top.index,
            command=command,
        )

        if not self.transport.connected:
            self.logger.emit("send_skipped", reason="disconnected", cycle=cycle, command=command)
            self._advance(sent=None)
            return

        ev = self.transport.send(command)
        if ev is None:
            self.state.last_error = f"send failed: {command}"
            self.logger.emit("send_failed", cycle=cycle, command=command)
            self.transport.log.system(f"Failed to send command {command}.")
            if isinstance(self.policy, FixedInterval):
                self._advance(sent=None)
                return
            # No ack can match a command that never went out: idle until stop/trigger.
            self.watcher.disarm()
            self.state.phase = Phase.AWAITING_ACK
            return

        self.state.last_command = command
        self.logger.emit("command_sent", cycle=cycle, command=command, seq=ev.seq)
        self._advance(sent=ev)

    def _advance(self, sent: Optional[SerialEvent]):
        if isinstance(self.policy, FixedInterval):
            self._schedule_next(self.policy.period_ms / 1000.0)
            return
        if sent is not None:
            self.watcher.arm(self.state.cycle_id, after_seq=sent.seq)
            self.state.phase = Phase.AWAITING_ACK
            return
        self._schedule_next(self.state.delay_ms / 1000.0)

    def _schedule_next(self, delay_s: float):
        self.state.phase = Phase.DELAYING
        self._next_cycle_ts = now_s() + max(0.0, delay_s)

    def _on_inference_error(self, cycle: int, error: Exception):
        if not self._finish_inference(cycle):
            return
        self._error_streak += 1
        self.state.last_error = str(error)
        self.logger.emit("inference_error", cycle=cycle, error=str(error), streak=self._error_streak)
        self.transport.log.system(f"Classification failed: {error}")
        if self._error_streak == 1 and self.notifier is not None:
            self.notifier.send("inference", "Vision sorter", f"Classification failed: {error}")
        if isinstance(self.policy, FixedInterval):
            wait_s = self.policy.period_ms / 1000.0
        else:
            wait_s = self.state.delay_ms / 1000.0
        self._schedule_next(max(wait_s, self.error_retry_s))

    def _on_line(self, ev: SerialEvent):
        fired = self.watcher.offer(ev)
        if fired is None:
            return
        if not self.state.active or fired != self.state.cycle_id or self.state.phase is not Phase.AWAITING_ACK:
            self.logger.emit("ack_ignored", cycle=fired, phase=self.state.phase)
            return
        self.state.acks_received += 1
        self.logger.emit("ack_received", cycle=fired, delay_ms=self.state.delay_ms)
        self._schedule_next(self.state.delay_ms / 1000.0)

    def _on_status(self, status: ConnectionStatus):
        if status is ConnectionStatus.CONNECTED:
            self._link_was_up = True
            if self.notifier is not None:
                self.notifier.clear("serial")
            return
        if status is ConnectionStatus.DISCONNECTED and self._link_was_up:
            self._link_was_up = False
            if self.state.active:
                self.logger.emit("link_lost_while_sorting", phase=self.state.phase)
                if self.notifier is not None:
                    self.notifier.send("serial", "Vision sorter", "Serial link to the actuator was lost.")

    # ---------------- Event plumbing ----------------

    def _enqueue_line(self, ev: SerialEvent):
        self._events.put(("line", ev))

    def _enqueue_status(self, status: ConnectionStatus):
        self._events.put(("status", status))

    def _dispatch(self, item):
        kind = item[0]
        with self._lock:
            if kind == "line":
                self._on_line(item[1])
            elif kind == "result":
                self._on_result(item[1], item[2])
            elif kind == "error":
                self._on_inference_error(item[1], item[2])
            elif kind == "status":
                self._on_status(item[1])

    def _tick(self):
        """Fire due deadlines: frame readiness polls and post-ack/interval delays."""
        with self._lock:
            now = now_s()
            if self.state.phase is Phase.WAITING_FOR_FRAME:
                if self._next_poll_ts is not None and now >= self._next_poll_ts:
                    if self._frame_ready():
                        self._classify()
                    else:
                        self._next_poll_ts = now + self.frame_poll_s
            elif self.state.phase is Phase.DELAYING:
                if self._next_cycle_ts is not None and now >= self._next_cycle_ts:
                    self._next_cycle_ts = None
                    self._begin_cycle()

    def pump(self):
        """Apply all queued events, then fire due deadlines. Does not block."""
        while True:
            try:
                item = self._events.get_nowait()
            except queue.Empty:
                break
            self._dispatch(item)
        self._tick()

    def _wait_s(self) -> float:
        with self._lock:
            deadlines = [t for t in (self._next_poll_ts, self._next_cycle_ts) if t is not None]
        if not deadlines:
            return 0.2
        return min(0.2, max(0.0, min(deadlines) - now_s()))

    def _run(self):
        while not self._stop_evt.is_set():
            try:
                item = self._events.get(timeout=self._wait_s())
            except queue.Empty:
                item = None
            try:
                if item is not None:
                    self._dispatch(item)
                self._tick()
            except Exception as e:
                self.logger.emit("loop_error", error=repr(e))

    def launch(self):
        """Start the event thread."""
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="vsort-loop")
        self._thread.start()

    def shutdown(self):
        """Stop sorting and the event thread."""
        self.stop()
        self._stop_evt.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
