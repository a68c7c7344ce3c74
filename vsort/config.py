from __future__ import annotations

import argparse
import os
from argparse import RawDescriptionHelpFormatter

try:
    import tomllib  # py3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib

from .constants import (
    DEFAULT_BAUD,
    DEFAULT_DELAY_MS,
    DEFAULT_SOCKET,
    POLICY_ACK,
    POLICY_INTERVAL,
    TOP_K,
    USAGE_EXAMPLES,
)
from .errors import ConfigurationError
from .policy import make_policy, validate_ms


def get_bool_env(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    val = val.lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    return default


def get_notifier_config():
    return {
        "enabled": get_bool_env("VSORT_NOTIFY", False),
        "pushover_token": os.getenv("PUSHOVER_TOKEN"),
        "pushover_user": os.getenv("PUSHOVER_USER"),
    }


def load_toml_config(path: str) -> dict:
    """Load TOML configuration from path."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"config file not found: {path}") from None
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"invalid TOML in {path}: {e}") from e


def _get_cfg(cfg: dict, section: str, key: str, default=None):
    sec = cfg.get(section, {})
    if not isinstance(sec, dict):
        return default
    return sec.get(key, default)


def config_defaults_from(cfg: dict) -> dict:
    """Map TOML config into argparse defaults."""
    return {
        "port": _get_cfg(cfg, "serial", "port", None),
        "baud": _get_cfg(cfg, "serial", "baud", DEFAULT_BAUD),
        "autoconnect": _get_cfg(cfg, "serial", "autoconnect", True),
        "camera_index": _get_cfg(cfg, "camera", "index", 0),
        "camera_width": _get_cfg(cfg, "camera", "width", None),
        "camera_height": _get_cfg(cfg, "camera", "height", None),
        "model": _get_cfg(cfg, "model", "path", None),
        "metadata": _get_cfg(cfg, "model", "metadata", None),
        "top_k": _get_cfg(cfg, "model", "top_k", TOP_K),
        "policy": _get_cfg(cfg, "sorting", "policy", POLICY_ACK),
        "delay_ms": _get_cfg(cfg, "sorting", "delay_ms", DEFAULT_DELAY_MS),
        "period_ms": _get_cfg(cfg, "sorting", "period_ms", 2000),
        "autostart": _get_cfg(cfg, "sorting", "autostart", False),
        "verbose": _get_cfg(cfg, "logging", "verbose", False),
        "no_banner": _get_cfg(cfg, "logging", "no_banner", False),
        "json": _get_cfg(cfg, "logging", "json", False),
        "control_socket": _get_cfg(cfg, "control", "socket", DEFAULT_SOCKET),
        "button_gpio": _get_cfg(cfg, "gpio", "button_gpio", None),
        "button_debounce": _get_cfg(cfg, "gpio", "button_debounce", 0.25),
    }


def mapping_from(cfg: dict) -> dict:
    """Return the ``[mapping]`` table (label -> command) as strings."""
    table = cfg.get("mapping", {})
    if not isinstance(table, dict):
        raise ConfigurationError("[mapping] must be a table of label = \"command\" pairs")
    return {str(k): str(v) for k, v in table.items()}


def default_metadata_path(model_path):
    """metadata.json next to the model, the layout model exports ship with."""
    if not model_path:
        return None
    return os.path.join(os.path.dirname(os.path.abspath(model_path)), "metadata.json")


def validate_args(args):
    """Check value ranges and build the trigger policy. Raises ConfigurationError."""
    if int(args.top_k) < 1:
        raise ConfigurationError(f"top_k must be >= 1, got {args.top_k}")
    if args.policy not in (POLICY_ACK, POLICY_INTERVAL):
        raise ConfigurationError(f"unknown trigger policy: {args.policy!r}")
    # The delay still matters under the interval policy once it is switched back.
    args.delay_ms = validate_ms(args.delay_ms, "delay_ms")
    return make_policy(args.policy, delay_ms=args.delay_ms, period_ms=args.period_ms)


def resolved_config_dict(args, mapping=None) -> dict:
    return {
        "serial": {"port": args.port, "baud": args.baud, "autoconnect": args.autoconnect},
        "camera": {"index": args.camera_index, "width": args.camera_width, "height": args.camera_height},
        "model": {"path": args.model, "metadata": args.metadata, "top_k": args.top_k},
        "sorting": {
            "policy": args.policy,
            "delay_ms": args.delay_ms,
            "period_ms": args.period_ms,
            "autostart": args.autostart,
        },
        "mapping": dict(mapping or {}),
        "logging": {"verbose": args.verbose, "no_banner": args.no_banner, "json": bool(args.json)},
        "control": {"socket": args.control_socket},
        "gpio": {"button_gpio": args.button_gpio, "button_debounce": args.button_debounce},
    }


def build_arg_parser(defaults=None):
    """Construct the CLI argument parser for the daemon."""
    ap = argparse.ArgumentParser(
        prog="vision-sorter",
        description="Camera + classifier sorting controller driving a serial actuator.",
        epilog=USAGE_EXAMPLES,
        formatter_class=RawDescriptionHelpFormatter,
    )
    # Defaults come from the built-ins; a TOML config is backfilled after parsing.
    if defaults is None:
        defaults = config_defaults_from({})
    ap.set_defaults(**defaults)
    ap.add_argument("-p", "--port", help="Serial device for the actuator (e.g., /dev/ttyACM0).")
    ap.add_argument("--baud", type=int, help="Serial baud rate (8N1). Default 115200.")
    ap.add_argument("--no-autoconnect", dest="autoconnect", action="store_false",
                    help="Do not open the serial port at startup (connect later via the control socket).")
    ap.add_argument("--camera-index", type=int, help="OpenCV camera index.")
    ap.add_argument("--camera-width", type=int, help="Requested capture width.")
    ap.add_argument("--camera-height", type=int, help="Requested capture height.")
    ap.add_argument("--model", help="Path to the TFLite classification model.")
    ap.add_argument("--metadata", help="Path to metadata.json with the class labels (default: next to the model).")
    ap.add_argument("--top-k", type=int, help="Number of ranked predictions kept per classification.")
    ap.add_argument("--policy", choices=[POLICY_ACK, POLICY_INTERVAL],
                    help="Re-trigger policy: wait for 'Action done.' (ack) or classify on a fixed period (interval).")
    ap.add_argument("--delay-ms", type=int, help="Settle delay after each acknowledgement, 0-5000 ms.")
    ap.add_argument("--period-ms", type=int, help="Classification period for the interval policy.")
    ap.add_argument("--autostart", dest="autostart", action="store_true", help="Start sorting as soon as the model is loaded.")
    ap.add_argument("--verbose", dest="verbose", action="store_true", help="Verbose logging (includes serial chatter).")
    ap.add_argument("--no-verbose", dest="verbose", action="store_false", help="Disable verbose logging.")
    json_group = ap.add_mutually_exclusive_group()
    json_group.add_argument("--json", dest="json", action="store_true", help="Emit JSON log events.")
    json_group.add_argument("--no-json", dest="json", action="store_false", help="Disable JSON log output.")
    ap.add_argument("--no-banner", dest="no_banner", action="store_true", help="Disable the startup banner.")
    sock_group = ap.add_mutually_exclusive_group()
    sock_group.add_argument("--control-socket", dest="control_socket",
                            help="Path to the local UNIX control socket used by vsortctl.")
    sock_group.add_argument("--no-control-socket", dest="control_socket", action="store_const", const="",
                            help="Disable the local control socket.")
    ap.add_argument("--button-gpio", type=int, help="Optional BCM GPIO pin for a start/stop push button.")
    ap.add_argument("--button-debounce", type=float, help="Debounce time for the push button in seconds.")
    ap.add_argument("--doctor", action="store_true", help="Check serial ports, camera and model, then exit. Sends nothing.")
    ap.add_argument("--list-ports", action="store_true", help="List serial ports and exit.")
    ap.add_argument("--config", help="Path to a TOML config file. CLI args override config values.")
    ap.add_argument("--print-config", action="store_true", help="Print the resolved configuration and exit.")
    ap.add_argument("--version", action="store_true", help="Print version and exit.")
    return ap


def parse_args(argv=None):
    """Parse the command line, applying a TOML config underneath it.

    Returns ``(args, mapping)``. The config file is read first and becomes the
    parser defaults, so anything given on the command line wins.
    """
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config")
    known, _ = pre.parse_known_args(argv)
    cfg = load_toml_config(known.config) if known.config else {}
    args = build_arg_parser(config_defaults_from(cfg)).parse_args(argv)
    if not args.metadata:
        args.metadata = default_metadata_path(args.model)
    return args, mapping_from(cfg)
