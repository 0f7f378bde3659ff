"""Tests for GuardMetrics."""

from __future__ import annotations

import threading

from antigravity_guard.proxy.metrics import GuardMetrics


def test_record_adds_sequence_and_timestamp():
    metrics = GuardMetrics()
    event = {"type": "refresh", "account": "a"}
    metrics.record(event)
    metrics.record({"type": "refresh", "account": "b", "ts": "fixed"})
    events = metrics.events_since(-1)
    assert [e["_seq"] for e in events] == [0, 1]
    assert "ts" in events[0]
    assert events[1]["ts"] == "fixed"
    assert "_seq" not in event


def test_events_since():
    metrics = GuardMetrics()
    for i in range(5):
        metrics.record({"type": "refresh", "n": i})
    assert [e["n"] for e in metrics.events_since(2)] == [3, 4]


def test_bounded_history():
    metrics = GuardMetrics(max_events=3)
    for i in range(10):
        metrics.record({"type": "rate_limit", "n": i})
    assert [e["n"] for e in metrics.events_since(-1)] == [7, 8, 9]


def test_snapshot_aggregates():
    metrics = GuardMetrics()
    metrics.record({"type": "recovery", "kind": "unknown"})
    metrics.record({"type": "recovery", "kind": "tool_result_missing"})
    metrics.record({"type": "recovery", "kind": "unknown"})
    metrics.record({"type": "rate_limit"})
    metrics.record({"type": "refresh_failed"})
    metrics.record({"type": "exhausted", "wait_ms": 1000})
    metrics.record({"type": "exhausted", "wait_ms": 3000})

    snap = metrics.snapshot()
    assert snap["total_recoveries"] == 3
    assert snap["recoveries_by_kind"] == {"unknown": 2, "tool_result_missing": 1}
    assert snap["total_rate_limits"] == 1
    assert snap["refresh_failures"] == 1
    assert snap["avg_exhausted_wait_ms"] == 2000
    assert snap["event_counts"]["exhausted"] == 2
    assert len(snap["recent_events"]) == 7


def test_empty_snapshot():
    snap = GuardMetrics().snapshot()
    assert snap["total_recoveries"] == 0
    assert snap["avg_exhausted_wait_ms"] == 0
    assert snap["recent_events"] == []


def test_concurrent_record():
    metrics = GuardMetrics()

    def worker():
        for _ in range(200):
            metrics.record({"type": "refresh"})

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    seqs = [e["_seq"] for e in metrics.events_since(-1)]
    assert len(seqs) == 800
    assert len(set(seqs)) == 800
