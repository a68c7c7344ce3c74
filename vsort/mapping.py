from __future__ import annotations

import threading
from typing import Dict, Iterable, Mapping, Optional


def resolve_command(label: str, mapping: Mapping[str, str], class_index: int) -> str:
    """Return the actuator command for a classified label.

    Uses ``mapping[label]`` when present and non-empty, otherwise the class
    index rendered in base 10.
    """
    cmd = mapping.get(label)
    if cmd:
        return cmd
    return str(int(class_index))


class CommandMapping:
    """Label -> command table owned by the sorting loop.

    Every known label has an entry; until overridden the entry is the label's
    zero-based index. Reads and writes are serialized so a lookup never sees a
    half-applied update."""
    def __init__(self, labels: Iterable[str] = (), overrides: Optional[Mapping[str, str]] = None):
        self._lock = threading.Lock()
        self._table: Dict[str, str] = {}
        self.set_labels(labels)
        if overrides:
            self.update(overrides)

    def set_labels(self, labels: Iterable[str]):
        """Rebuild the table for a new label set.

        Overrides for labels that are still present are kept; new labels get
        their index as the default command.
        """
        with self._lock:
            old = self._table
            self._table = {label: old.get(label) or str(i) for i, label in enumerate(labels)}

    def set(self, label: str, command: str):
        command = (command or "").strip()
        with self._lock:
            self._table[label] = command

    def update(self, overrides: Mapping[str, str]):
        with self._lock:
            for label, command in overrides.items():
                self._table[str(label)] = str(command).strip()

    def resolve(self, label: str, class_index: int) -> str:
        with self._lock:
            return resolve_command(label, self._table, class_index)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._table)

    def __len__(self) -> int:
        with self._lock:
            return len(self._table)
