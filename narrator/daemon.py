#!/usr/bin/env python3
"""
Narrator daemon.

Polls the session registry on a fixed interval and, for every active session
whose transcript has grown, summarizes the new entries and hands the text to
the generation queue:

    registry -> transcript length check -> summarizer -> queue -> registry cursor

One asyncio task runs the loop. A failure inside a tick (or inside one
session's check) is logged and the loop carries on with the next tick.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
import time
from functools import partial
from pathlib import Path
from typing import Any, Dict, Optional

from narrator import config, perf
from narrator.common import (
    DAEMON_LOG_FILE,
    LIFECYCLE_LOG_FILE,
    LOGS_DIR,
    PID_FILE,
    QUEUE_FILE,
    REGISTRY_FILE,
    STATUS_FILE,
    ensure_dirs,
    now_iso,
    pid_alive,
)
from narrator.config import NarratorOptions
from narrator.generation import GenerationQueue
from narrator.models import Session
from narrator.registry import SessionRegistry
from narrator.storage import JsonFileStore
from narrator.summarizer import generate_summary, transcript_length

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

STOP_TIMEOUT = 5.0  # seconds to wait for the daemon to exit after SIGTERM


def setup_logging(level: int = logging.INFO):
    """Stdout logging (the CLI redirects it into daemon.log) plus the lifecycle file."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s | %(levelname)s | %(message)s',
        handlers=[logging.StreamHandler()],
    )
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(LIFECYCLE_LOG_FILE)
    handler.setFormatter(logging.Formatter('%(asctime)s | %(message)s'))
    lifecycle_log.addHandler(handler)
    lifecycle_log.setLevel(logging.INFO)


class NarratorDaemon:
    """Detects transcript activity and feeds summaries to the generation queue."""

    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        queue: Optional[GenerationQueue] = None,
        options: Optional[NarratorOptions] = None,
        pid_file: Path = PID_FILE,
        status_file: Path = STATUS_FILE,
    ):
        self.options = options or config.options()
        self.registry = registry or SessionRegistry(REGISTRY_FILE)
        self.queue = queue or GenerationQueue(QUEUE_FILE, options=self.options)
        self.pid_file = Path(pid_file)
        self._status = JsonFileStore(status_file)

        # session id -> transcript length seen on the previous check
        self._known_lengths: Dict[str, int] = {}
        self._shutdown_flag = False
        self._wake: Optional[asyncio.Event] = None
        self._started = time.monotonic()

    @property
    def known_lengths(self) -> Dict[str, int]:
        return dict(self._known_lengths)

    def _write_status(self, status: str, **extra: Any):
        try:
            self._status.write({
                "status": status,
                "timestamp": now_iso(),
                "pid": os.getpid(),
                "uptime": round(time.monotonic() - self._started, 1),
                **extra,
            })
        except OSError as e:
            log.warning(f"Failed to write status record: {e}")

    async def _run_blocking(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    async def check_session(self, session: Session) -> bool:
        """Check one session for new activity. Returns True if a summary was queued."""
        transcript = Path(session.transcript_path).expanduser()
        if not transcript.exists():
            log.warning(f"[{session.label}] transcript missing: {transcript}")
            await self._run_blocking(self.registry.mark_error, session.id, f"transcript not found: {transcript}")
            self._known_lengths.pop(session.id, None)
            return False

        length = await self._run_blocking(transcript_length, transcript)
        known = self._known_lengths.get(session.id, 0)
        if length < known:
            log.warning(f"[{session.label}] transcript shrank ({known} -> {length}), resetting")
            self._known_lengths[session.id] = length
            return False
        if length == known:
            return False

        # Cursor is the last summarized index; a session never queued starts at its cursor
        from_index = session.summary_cursor + 1 if session.last_queued_at else session.summary_cursor
        summary = await self._run_blocking(
            generate_summary,
            transcript,
            from_index,
            session.label,
            max_length=self.options.max_summary_length,
            summary_length=self.options.summary_length,
            exclude_tool_output=self.options.exclude_tool_output,
        )

        if summary is None:
            await self._run_blocking(self.registry.update_activity, session.id, message_count=length)
            self._known_lengths[session.id] = length
            return False

        await self.queue.enqueue(session.id, summary.text, summary.end_index)
        await self._run_blocking(
            self.registry.update_activity,
            session.id,
            message_count=length,
            summary_cursor=summary.end_index,
            last_queued_at=now_iso(),
        )
        self._known_lengths[session.id] = length
        log.info(f"[{session.label}] queued summary of {summary.message_count} entries (up to {summary.end_index})")
        lifecycle_log.info(f"SESSION | QUEUED | id={session.id} | index={summary.end_index}")
        perf.incr("summaries_queued", component="daemon", session=session.id)
        return True

    async def poll_once(self) -> Dict[str, int]:
        """One tick: check every active session, then write the status record."""
        queued = 0
        with perf.timed("poll_cycle_ms", component="daemon"):
            sessions = await self._run_blocking(self.registry.get_active_sessions)
            for session in sessions:
                try:
                    if await self.check_session(session):
                        queued += 1
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log.error(f"Failed to check session {session.id}: {e}")
                    perf.error("session_check", component="daemon")

        self._write_status("running", sessions_checked=len(sessions), queued_this_tick=queued)
        perf.gauge("sessions_checked", len(sessions), component="daemon")
        return {"sessions_checked": len(sessions), "queued": queued}

    def cleanup(self) -> Dict[str, int]:
        """Drop inactive sessions from the registry and forget their cached lengths."""
        result = self.registry.cleanup()
        known = self.registry.get_all_sessions()
        stale = [sid for sid in self._known_lengths if sid not in known]
        for sid in stale:
            del self._known_lengths[sid]
        return {**result, "cache_pruned": len(stale)}

    def request_shutdown(self):
        self._shutdown_flag = True
        if self._wake is not None:
            self._wake.set()

    async def _sleep(self, seconds: float):
        """Sleep until the next tick or until shutdown is requested."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _shutdown(self):
        log.info("DAEMON | SHUTDOWN | START")
        lifecycle_log.info("DAEMON | SHUTDOWN | START")
        try:
            await self.queue.close()
        except Exception as e:
            log.error(f"Error stopping queue worker: {e}")
        self._write_status("stopped")
        self.pid_file.unlink(missing_ok=True)
        log.info("DAEMON | SHUTDOWN | COMPLETE")
        lifecycle_log.info("DAEMON | SHUTDOWN | COMPLETE")

    async def run(self):
        """Main async loop."""
        self._started = time.monotonic()
        self._wake = asyncio.Event()
        self._shutdown_flag = False

        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(os.getpid()))
        self._write_status("starting")

        log.info("=" * 60)
        log.info("Narrator daemon starting...")
        log.info(f"Polling interval: {self.options.poll_interval}s")
        log.info("=" * 60)
        lifecycle_log.info(f"DAEMON | START | pid={os.getpid()}")

        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread or unsupported platform
                pass

        try:
            while not self._shutdown_flag:
                try:
                    await self.poll_once()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log.error(f"Error in poll loop: {e}")
                await self._sleep(self.options.poll_interval)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self._shutdown()


# ── process control (used by the CLI) ───────────────────────────

def read_pid(pid_file: Path = PID_FILE) -> Optional[int]:
    """PID of the running daemon, or None. Removes a stale PID file."""
    if not pid_file.exists():
        return None
    try:
        pid = int(pid_file.read_text().strip())
    except ValueError:
        pid_file.unlink(missing_ok=True)
        return None
    if not pid_alive(pid):
        pid_file.unlink(missing_ok=True)
        return None
    return pid


def read_status(status_file: Path = STATUS_FILE) -> Optional[dict]:
    try:
        return json.loads(status_file.read_text())
    except (OSError, ValueError):
        return None


def start_background(pid_file: Path = PID_FILE) -> Dict[str, Any]:
    """Spawn the daemon as a detached process."""
    pid = read_pid(pid_file)
    if pid:
        return {"started": False, "pid": pid, "reason": "already running"}

    ensure_dirs()
    log_fh = open(DAEMON_LOG_FILE, "a")
    process = subprocess.Popen(
        [sys.executable, "-m", "narrator.daemon"],
        stdout=log_fh,
        stderr=subprocess.STDOUT,
        start_new_session=True,  # Detach from terminal
    )
    log_fh.close()  # Popen has its own copy of the fd
    pid_file.write_text(str(process.pid))
    return {"started": True, "pid": process.pid, "log": str(DAEMON_LOG_FILE)}


def daemon_status(pid_file: Path = PID_FILE, status_file: Path = STATUS_FILE) -> Dict[str, Any]:
    pid = read_pid(pid_file)
    return {"running": pid is not None, "pid": pid, "status": read_status(status_file)}


def stop(pid_file: Path = PID_FILE, timeout: float = STOP_TIMEOUT) -> Dict[str, Any]:
    """SIGTERM the daemon and wait for it to exit."""
    pid = read_pid(pid_file)
    if not pid:
        return {"stopped": False, "reason": "not running"}
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pid_file.unlink(missing_ok=True)
        return {"stopped": True, "pid": pid}

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            pid_file.unlink(missing_ok=True)
            return {"stopped": True, "pid": pid}
        time.sleep(0.1)
    return {"stopped": False, "pid": pid, "reason": f"still running after {timeout}s"}


def main():
    # Only failure to create the data directories is fatal
    ensure_dirs()
    setup_logging()
    config.load()
    daemon = NarratorDaemon()
    asyncio.run(daemon.run())


if __name__ == "__main__":
    main()
