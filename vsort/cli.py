from __future__ import annotations

import json
import signal
import sys
import threading

from .camera import OpenCVFrameSource
from .classifier import TFLiteClassifier
from .config import get_notifier_config, parse_args, resolved_config_dict, validate_args
from .constants import VERSION
from .control import ControlServer
from .doctor import print_ports, run_doctor
from .errors import ConfigurationError, SorterError
from .gpio import StartStopButton
from .logging import JsonLogger
from .loop import SortingLoop
from .mapping import CommandMapping
from .notify import Notifier
from .serialio import SerialTransport, serial
from .state import LoopState


def main(argv=None):
    """CLI entry point. Parses args, wires the controller together and runs until signalled."""
    try:
        args, overrides = parse_args(argv)
        policy = validate_args(args)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if args.version:
        print(VERSION)
        return 0

    # Print resolved configuration and exit (does not need pyserial, OpenCV or a model).
    if args.print_config:
        print(json.dumps(resolved_config_dict(args, overrides), indent=2, sort_keys=True))
        return 0

    if args.list_ports:
        print_ports()
        return 0

    if args.doctor:
        return run_doctor(args)

    if serial is None:  # pragma: no cover
        print("ERROR: pyserial is not installed. Install it with: pip install pyserial", file=sys.stderr)
        return 2

    logger = JsonLogger(enable_json=bool(args.json))
    transport = SerialTransport(args.port, args.baud, logger=logger, verbose=args.verbose)

    classifier = TFLiteClassifier(args.model, args.metadata, top_k=args.top_k)
    if args.model:
        try:
            classifier.load()
        except ConfigurationError as e:
            # Keep running: the operator can still drive the actuator manually.
            logger.emit("model_load_failed", model=args.model, error=str(e))
            transport.log.system(f"Failed to load model: {e}")
        else:
            logger.emit("model_loaded", model=args.model, labels=len(classifier.labels))

    camera = OpenCVFrameSource(args.camera_index, args.camera_width, args.camera_height, logger=logger)
    try:
        camera.start()
    except ConfigurationError as e:
        logger.emit("camera_start_failed", index=args.camera_index, error=str(e))
        transport.log.system(f"Camera unavailable: {e}")

    mapping = CommandMapping(classifier.labels, overrides)
    notifier = Notifier(logger=logger, **get_notifier_config())
    state = LoopState(delay_ms=args.delay_ms)
    loop = SortingLoop(
        state=state,
        logger=logger,
        transport=transport,
        classifier=classifier,
        frame_source=camera,
        mapping=mapping,
        policy=policy,
        notifier=notifier,
    )

    if not args.no_banner:
        print(f"vision-sorter {VERSION}")
        # Structured startup event for log scraping
        logger.emit(
            "startup",
            version=VERSION,
            port=args.port,
            baud=args.baud,
            camera_index=args.camera_index,
            model=args.model,
            labels=len(classifier.labels),
            **policy.describe(),
        )

    loop.launch()
    if args.autoconnect and args.port:
        transport.connect()

    control = ControlServer(loop, args.control_socket, logger=logger)
    if args.control_socket:
        control.start()

    button = None
    if args.button_gpio is not None:
        def toggle():
            if state.active:
                loop.stop()
            else:
                loop.start()

        try:
            button = StartStopButton(args.button_gpio, toggle, debounce_s=args.button_debounce)
        except (SorterError, OSError, RuntimeError) as e:
            logger.emit("button_unavailable", gpio=args.button_gpio, error=str(e))

    if args.autostart:
        loop.start()

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    while not stop.is_set():
        stop.wait(0.2)

    logger.emit("shutdown")
    if button is not None:
        button.close()
    control.stop()
    loop.shutdown()
    transport.disconnect()
    camera.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
