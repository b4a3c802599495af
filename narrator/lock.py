"""
Advisory lock file shared by every process that touches the session registry.

The lock is a convention: a process holds it by exclusively creating
`<name>.lock` (content = creation timestamp) and releases it by deleting the
file. Nothing stops a process that ignores the convention.
"""
from __future__ import annotations

import logging
import os
import time
from pathlib import Path

log = logging.getLogger(__name__)

LOCK_RETRIES = 50
LOCK_RETRY_DELAY = 0.01  # seconds
LOCK_STALE_SECONDS = 5.0


class AdvisoryLock:
    """Cooperative lock file with bounded spinning and stale-lock recovery.

    Usage:
        with AdvisoryLock(path) as acquired:
            ...  # acquired is False if the wait bound was exhausted
    """

    def __init__(
        self,
        path: Path,
        retries: int = LOCK_RETRIES,
        retry_delay: float = LOCK_RETRY_DELAY,
        stale_after: float = LOCK_STALE_SECONDS,
    ):
        self.path = Path(path)
        self.retries = retries
        self.retry_delay = retry_delay
        self.stale_after = stale_after
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _age(self) -> float:
        """Age of the existing lock in seconds, from its recorded timestamp (mtime as fallback)."""
        try:
            recorded = float(self.path.read_text().strip())
        except (OSError, ValueError):
            try:
                recorded = self.path.stat().st_mtime
            except OSError:
                return 0.0
        return time.time() - recorded

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, str(time.time()).encode())
        finally:
            os.close(fd)
        return True

    def acquire(self) -> bool:
        """Try to take the lock. Returns False once the retry budget is exhausted."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(self.retries):
            if self._try_create():
                self._held = True
                return True
            if self._age() > self.stale_after:
                log.warning(f"Removing stale lock {self.path}")
                self.path.unlink(missing_ok=True)
                continue
            time.sleep(self.retry_delay)
        log.warning(f"Could not acquire {self.path} after {self.retries} attempts")
        return False

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
