from __future__ import annotations

VERSION = "0.3.1"

# Literal text the actuator prints once it has finished a command.
ACK_MARKER = "Action done."

DEFAULT_BAUD = 115200
SERIAL_READ_TIMEOUT_S = 0.1

# Frame readiness is re-checked at this interval while waiting for the camera.
FRAME_POLL_S = 0.1

TOP_K = 5
SERIAL_LOG_SIZE = 100

# A partial line longer than this is discarded (device never sent a newline).
MAX_PENDING_BYTES = 4096

DEFAULT_DELAY_MS = 1000
MIN_DELAY_MS = 0
MAX_DELAY_MS = 5000

# Minimum wait before retrying after a failed classification.
ERROR_RETRY_S = 1.0

# The camera stops reporting ready after this many failed reads in a row, or
# when its newest frame is older than CAMERA_STALE_S.
CAMERA_MAX_MISSES = 5
CAMERA_STALE_S = 2.0

POLICY_ACK = "ack"
POLICY_INTERVAL = "interval"

DEFAULT_SOCKET = "/run/vsort/vsort.sock"

MSG_STARTED = "Sorting started."
MSG_STOPPED = "Sorting stopped."
MSG_WAITING_FRAME = "Waiting for video stream..."
MSG_CLASSIFYING = "Running classification..."


USAGE_EXAMPLES = """\
Usage examples:
  # Run with a model and an Arduino on USB
  python vision-sorter.py -p /dev/ttyACM0 --model model.tflite --metadata metadata.json

  # Start sorting immediately, 500 ms settle delay after each "Action done."
  python vision-sorter.py -p /dev/ttyACM0 --model model.tflite --autostart --delay-ms 500

  # Classify on a fixed 2 s period instead of waiting for acknowledgements
  python vision-sorter.py -p /dev/ttyACM0 --model model.tflite --policy interval --period-ms 2000

  # Everything from a TOML file, JSON log events
  python vision-sorter.py --config /etc/vsort.toml --json

  # Host diagnostic (serial ports, camera, model); sends nothing
  python vision-sorter.py --doctor --model model.tflite
"""
