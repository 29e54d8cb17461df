from __future__ import annotations

import threading
from typing import Dict


class Metrics:
    """Named counters and gauges for health reporting (orders placed, syncs coalesced, ...)."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, float] = {}
        self._lock = threading.Lock()

    def inc(self, name: str, n: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + n

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def count(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def gauge(self, name: str) -> float:
        with self._lock:
            return self._gauges.get(name, 0.0)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            out: Dict[str, float] = {k: float(v) for k, v in self._counters.items()}
            out.update(self._gauges)
        return out
