from __future__ import annotations

import threading
from typing import Optional, Set

import requests

PUSHOVER_URL = "https://api.pushover.net/1/messages.json"


class Notifier:
    """Optional Pushover alerts for the operator.

    Each alert has a key ("serial", "inference"); a key notifies once and stays
    quiet until ``clear(key)``, so a failure streak produces one message.
    Delivery happens on a daemon thread and never raises."""
    def __init__(self, enabled: bool, pushover_token: Optional[str], pushover_user: Optional[str],
                 timeout_s: float = 5.0, logger=None):
        self.enabled = enabled and bool(pushover_token and pushover_user)
        self._token = pushover_token
        self._user = pushover_user
        self._timeout = timeout_s
        self.logger = logger
        self._sent: Set[str] = set()
        self._lock = threading.Lock()

    def send(self, key: str, title: str, message: str, priority: int = 0) -> bool:
        """Queue an alert. Returns False if disabled or already sent for this key."""
        if not self.enabled:
            return False
        with self._lock:
            if key in self._sent:
                return False
            self._sent.add(key)
        threading.Thread(target=self._send_sync, args=(title, message, priority), daemon=True).start()
        return True

    def clear(self, key: str):
        with self._lock:
            self._sent.discard(key)

    def _send_sync(self, title: str, message: str, priority: int):
        try:
            resp = requests.post(
                PUSHOVER_URL,
                data={
                    "token": self._token,
                    "user": self._user,
                    "title": title,
                    "message": message,
                    "priority": priority,
                },
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except Exception as e:
            if self.logger is not None:
                self.logger.emit("notify_error", error=str(e))
