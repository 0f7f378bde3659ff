"""Thread-safe event collector for the guard's status endpoint."""

from __future__ import annotations

import statistics
import threading
import time
from collections import Counter, deque
from datetime import datetime, timezone


class GuardMetrics:
    """Collects structured events from rotation, refresh and recovery.

    Thread-safe: ``record()`` can be called from ``asyncio.to_thread``
    workers as well as the event loop.
    """

    def __init__(self, max_events: int = 5000) -> None:
        self.start_time: float = time.time()
        self._events: deque[dict] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._seq = 0

    def record(self, event: dict) -> None:
        """Append an event (thread-safe). Adds ``_seq`` and ``ts``."""
        with self._lock:
            event = dict(event)  # shallow copy to avoid caller mutation
            event["_seq"] = self._seq
            if "ts" not in event:
                event["ts"] = datetime.now(timezone.utc).isoformat()
            self._seq += 1
            self._events.append(event)

    def events_since(self, seq: int) -> list[dict]:
        """Return events with ``_seq`` > *seq*."""
        with self._lock:
            return [e for e in self._events if e["_seq"] > seq]

    def snapshot(self) -> dict:
        """Aggregate counters for ``GET /v1/status``."""
        with self._lock:
            events = list(self._events)

        counts = Counter(e.get("type", "unknown") for e in events)
        recoveries = [e for e in events if e.get("type") == "recovery"]
        rate_limits = [e for e in events if e.get("type") == "rate_limit"]
        waits = [e["wait_ms"] for e in events if e.get("type") == "exhausted" and "wait_ms" in e]

        return {
            "type": "snapshot",
            "uptime_s": round(time.time() - self.start_time, 1),
            "event_counts": dict(counts),
            "total_recoveries": len(recoveries),
            "recoveries_by_kind": dict(Counter(e.get("kind") for e in recoveries)),
            "total_rate_limits": len(rate_limits),
            "refresh_failures": counts.get("refresh_failed", 0),
            "avg_exhausted_wait_ms": round(statistics.mean(waits), 1) if waits else 0,
            "recent_events": events[-50:],
        }
