"""
Pipeline metrics as structured JSONL records.

Usage:
    from narrator import perf

    perf.gauge("sessions_checked", 3, component="daemon")
    perf.incr("summaries_queued", component="daemon", session=session_id)

    with perf.timed("tts_ms", component="queue"):
        audio = synthesize(...)

Records go to <logs>/perf-YYYY-MM-DD.jsonl, one JSON object per line.
"""

import json
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from narrator.common import LOGS_DIR

PERF_DIR = LOGS_DIR
SCHEMA_VERSION = 1
MAX_FILE_SIZE_MB = 50


def _log_metric(metric: str, value: float, **labels: Any) -> None:
    """Append metric to the daily JSONL file. Never raises."""
    try:
        PERF_DIR.mkdir(parents=True, exist_ok=True)
        path = PERF_DIR / f"perf-{datetime.now():%Y-%m-%d}.jsonl"

        if path.exists() and path.stat().st_size > MAX_FILE_SIZE_MB * 1024 * 1024:
            return

        entry = {
            "v": SCHEMA_VERSION,
            "ts": datetime.now().isoformat(),
            "metric": metric,
            "value": value,
            **labels,
        }
        with open(path, "a") as f:
            f.write(json.dumps(entry) + "\n")
    except Exception as e:
        print(f"[perf] WARNING: failed to log metric: {e}", file=sys.stderr)


def timing(metric: str, ms: float, **labels: Any) -> None:
    """Record a duration in milliseconds."""
    _log_metric(metric, round(ms, 2), **labels)


def incr(metric: str, count: int = 1, **labels: Any) -> None:
    _log_metric(metric, count, **labels)


def gauge(metric: str, value: float, **labels: Any) -> None:
    _log_metric(metric, value, **labels)


def error(error_type: str, **labels: Any) -> None:
    incr("error_count", error_type=error_type, **labels)


@contextmanager
def timed(metric: str, **labels: Any):
    """Time the enclosed block, recording it even if the block raises."""
    start = time.perf_counter()
    try:
        yield
    finally:
        timing(metric, (time.perf_counter() - start) * 1000, **labels)
