from __future__ import annotations

from typing import Callable, Optional

# The package imports without hardware libraries so tests run anywhere; the
# button raises ConfigurationError if gpiozero is missing when it is used.
try:
    from gpiozero import DigitalInputDevice, Device
except ImportError:  # pragma: no cover
    DigitalInputDevice = None
else:
    try:
        from gpiozero.pins.lgpio import LGPIOFactory
        # Force lgpio backend (Pi 5 / Debian Trixie+)
        Device.pin_factory = LGPIOFactory()
    except ImportError:  # pragma: no cover
        LGPIOFactory = None  # gpiozero picks its default pin factory

from .errors import ConfigurationError
from .util import now_s


class StartStopButton:
    """Physical push button that toggles sorting.

    Active-low with the internal pull-up: press shorts the pin to GND. The
    action runs on the press edge; presses within ``debounce_s`` of the last
    accepted one are ignored.
    """
    def __init__(self, pin: int, on_toggle: Callable[[], None], debounce_s: float = 0.25,
                 device_factory: Optional[Callable] = None):
        factory = device_factory or DigitalInputDevice
        if factory is None:
            raise ConfigurationError("gpiozero is not installed; the start/stop button needs it")
        self.pin = int(pin)
        self.on_toggle = on_toggle
        self.debounce_s = float(debounce_s)
        self._last_press = None
        self._closed = False
        self.device = factory(self.pin, pull_up=True)
        self.device.when_deactivated = self._on_press

    def _on_press(self):
        if self._closed:
            return
        now = now_s()
        if self._last_press is not None and (now - self._last_press) < self.debounce_s:
            return
        self._last_press = now
        self.on_toggle()

    def close(self):
        self._closed = True
        close = getattr(self.device, "close", None)
        if close is not None:
            close()
