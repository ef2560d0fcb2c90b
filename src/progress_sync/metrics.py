"""In-memory save and probe metrics.

Asyncio is single-threaded, so plain dicts are safe without locking.
"""

import time

_start_time = time.monotonic()

_metrics: dict = {
    "saves_applied": 0,
    "saves_rejected": 0,
    "saves_failed": 0,
    "probes_ok": 0,
    "probes_failed": 0,
    "total_save_duration_ms": 0.0,
}


def record_save_applied(duration_ms: float) -> None:
    _metrics["saves_applied"] += 1
    _metrics["total_save_duration_ms"] += duration_ms


def record_save_rejected() -> None:
    _metrics["saves_rejected"] += 1


def record_save_failed() -> None:
    _metrics["saves_failed"] += 1


def record_probe(success: bool) -> None:
    if success:
        _metrics["probes_ok"] += 1
    else:
        _metrics["probes_failed"] += 1


def reset_metrics() -> None:
    """Zero all counters (tests and process restarts)."""
    for key in _metrics:
        _metrics[key] = 0.0 if key.endswith("_ms") else 0


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    applied = _metrics["saves_applied"]
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "saves_applied": applied,
        "saves_rejected": _metrics["saves_rejected"],
        "saves_failed": _metrics["saves_failed"],
        "probes_ok": _metrics["probes_ok"],
        "probes_failed": _metrics["probes_failed"],
        "avg_save_duration_ms": (
            round(_metrics["total_save_duration_ms"] / applied, 1) if applied else 0.0
        ),
    }
