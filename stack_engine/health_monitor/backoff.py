# stack_engine/health_monitor/backoff.py
"""Exponential backoff with a cap (10s, 30s, 90s, ... by default)."""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional


class ExponentialBackoff:
    def __init__(self, base_seconds: float = 10.0, multiplier: float = 3.0, cap_seconds: float = 600.0):
        if base_seconds <= 0 or multiplier < 1 or cap_seconds < base_seconds:
            raise ValueError("invalid backoff parameters")
        self.base_seconds = base_seconds
        self.multiplier = multiplier
        self.cap_seconds = cap_seconds

    def delay(self, attempt: int) -> float:
        """
        Delay after the `attempt`-th consecutive failure (1-based).
        """
        if attempt < 1:
            return 0.0
        return min(self.cap_seconds, self.base_seconds * self.multiplier ** (attempt - 1))


@dataclass
class _Entry:
    attempts: int
    next_at: datetime


class BackoffTracker:
    """Per-key attempt counters and the time each key may be retried."""

    def __init__(self, backoff: ExponentialBackoff):
        self.backoff = backoff
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def ready(self, key: str, now: datetime) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is None or now >= entry.next_at

    def record_attempt(self, key: str, now: datetime) -> float:
        """Count an attempt and schedule the next one. Returns the delay."""
        with self._lock:
            entry = self._entries.get(key)
            attempts = entry.attempts + 1 if entry else 1
            delay = self.backoff.delay(attempts)
            self._entries[key] = _Entry(attempts, now + timedelta(seconds=delay))
            return delay

    def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def attempts(self, key: str) -> int:
        with self._lock:
            entry = self._entries.get(key)
            return entry.attempts if entry else 0

    def next_attempt_at(self, key: str) -> Optional[datetime]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.next_at if entry else None
