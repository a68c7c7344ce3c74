from __future__ import annotations

import time

from .camera import OpenCVFrameSource
from .classifier import TFLiteClassifier
from .errors import SorterError
from .logging import JsonLogger
from .serialio import serial


def list_serial_ports():
    """Return ``[(device, description), ...]`` for the serial ports pyserial can see."""
    if serial is None:  # pragma: no cover
        raise SystemExit("ERROR: pyserial is not installed. Install it with: pip install pyserial")
    from serial.tools import list_ports

    return [(p.device, p.description or "") for p in sorted(list_ports.comports(), key=lambda p: p.device)]


def print_ports():
    ports = list_serial_ports()
    if not ports:
        print("No serial ports found.")
        return
    for device, desc in ports:
        print(f"  {device}  {desc}")


def run_doctor(args, frame_timeout_s: float = 5.0) -> int:
    """Check serial ports, camera and model. Nothing is ever written to the actuator.

    Returns 0 if every configured component passed, 1 otherwise.
    """
    print("Doctor Mode (safe):")
    print("  - No command is sent to the actuator.")
    print()
    failures = 0

    print("Serial ports:")
    ports = list_serial_ports()
    for device, desc in ports:
        mark = "*" if device == args.port else " "
        print(f"  {mark} {device}  {desc}")
    if not ports:
        print("  WARN: no serial ports found")
    if args.port and args.port not in [d for d, _ in ports]:
        print(f"  WARN: configured port {args.port} is not present")
        failures += 1
    print()

    print(f"Camera {args.camera_index}:")
    cam = OpenCVFrameSource(args.camera_index, args.camera_width, args.camera_height, logger=JsonLogger())
    frame = None
    try:
        cam.start()
        deadline = time.monotonic() + frame_timeout_s
        while not cam.is_ready() and time.monotonic() < deadline:
            time.sleep(0.05)
        if cam.is_ready():
            frame = cam.current_frame()
            h, w = frame.shape[:2]
            print(f"  OK: frame {w}x{h}")
        else:
            print(f"  WARN: no frame within {frame_timeout_s:.1f}s")
            failures += 1
    except SorterError as e:
        print(f"  FAIL: {e}")
        failures += 1
    finally:
        cam.stop()
    print()

    print("Model:")
    if not args.model:
        print("  SKIP: no model configured (--model)")
        return 1 if failures else 0
    clf = TFLiteClassifier(args.model, args.metadata, top_k=args.top_k)
    try:
        clf.load()
    except SorterError as e:
        print(f"  FAIL: {e}")
        return 1
    print(f"  OK: {args.model} ({len(clf.labels)} labels)")
    if frame is not None:
        try:
            preds = clf.predict(frame)
        except SorterError as e:
            print(f"  FAIL: classification: {e}")
            failures += 1
        else:
            for p in preds:
                print(f"    {p.index:>3}  {p.label:<24} {p.confidence:.3f}")
    return 1 if failures else 0
