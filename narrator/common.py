"""
Shared paths and helpers used by the daemon, the queue worker and the CLI.

Everything lives under a single data directory (~/.narrator by default,
overridable with NARRATOR_HOME) so tests and side-by-side installs can point
the whole pipeline somewhere else.
"""
from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Optional

# Paths
HOME = Path.home()
NARRATOR_HOME = Path(os.environ.get("NARRATOR_HOME", str(HOME / ".narrator")))
STATE_DIR = NARRATOR_HOME / "state"
LOGS_DIR = NARRATOR_HOME / "logs"
AUDIO_DIR = NARRATOR_HOME / "audio"
SECRETS_FILE = NARRATOR_HOME / ".env"

REGISTRY_FILE = STATE_DIR / "sessions.json"
QUEUE_FILE = STATE_DIR / "queue.json"
PID_FILE = STATE_DIR / "daemon.pid"
STATUS_FILE = STATE_DIR / "daemon-status.json"
DAEMON_LOG_FILE = LOGS_DIR / "daemon.log"
LIFECYCLE_LOG_FILE = LOGS_DIR / "session_lifecycle.log"

# Sessions with no activity for this long are inactive (and removed by cleanup)
SESSION_TIMEOUT_SECONDS = 30 * 60


def now_iso() -> str:
    return datetime.now().isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp, tolerating a trailing Z. Returns None if unparsable."""
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Naive local time everywhere; drop tz after converting
    if ts.tzinfo is not None:
        ts = ts.astimezone().replace(tzinfo=None)
    return ts


def seconds_since(value: Optional[str], now: Optional[datetime] = None) -> float:
    """Seconds elapsed since an ISO timestamp. Unparsable timestamps count as infinitely old."""
    ts = parse_iso(value)
    if ts is None:
        return float("inf")
    return ((now or datetime.now()) - ts).total_seconds()


def ensure_dirs() -> None:
    """Create the data directory layout. Raises OSError if it cannot be created."""
    for d in (STATE_DIR, LOGS_DIR, AUDIO_DIR):
        d.mkdir(parents=True, exist_ok=True)


def pid_alive(pid: Optional[int]) -> bool:
    """Whether a process with this PID exists (it may belong to another user)."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
