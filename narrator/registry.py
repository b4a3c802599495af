"""
SessionRegistry: durable store of tracked sessions, shared across processes.

The CLI, the daemon and any registration hook all open the same registry
document. Every access goes through the advisory lock file next to it, and
writes replace the document atomically, so a reader never sees a torn file.
Concurrent writers are last-writer-wins.
"""
from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from pydantic import ValidationError

from narrator.common import SESSION_TIMEOUT_SECONDS, now_iso, seconds_since
from narrator.lock import AdvisoryLock
from narrator.models import RegistryDocument, Session
from narrator.storage import DocumentStore, JsonFileStore

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")


class SessionRegistry:
    """Persistent registry mapping session id to Session."""

    def __init__(
        self,
        store: Union[Path, str, DocumentStore],
        lock_path: Optional[Path] = None,
        timeout_seconds: float = SESSION_TIMEOUT_SECONDS,
    ):
        if isinstance(store, (str, Path)):
            path = Path(store)
            store = JsonFileStore(path)
            lock_path = lock_path or path.with_name(path.name + ".lock")
        if lock_path is None:
            raise ValueError("lock_path is required when passing a custom store")
        self._store = store
        self._lock_path = Path(lock_path)
        self.timeout_seconds = timeout_seconds
        # In-process mutex; the lock file only coordinates separate processes
        self._mutex = threading.Lock()

    @property
    def store(self) -> DocumentStore:
        return self._store

    def _load(self) -> RegistryDocument:
        try:
            raw = self._store.read()
        except (OSError, ValueError) as e:
            log.warning(f"Failed to load session registry, starting empty: {e}")
            return RegistryDocument()
        if raw is None:
            return RegistryDocument()
        return RegistryDocument.from_raw(raw)

    def _save(self, doc: RegistryDocument):
        doc.last_checked = now_iso()
        self._store.write(doc.model_dump(mode="json"))

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._mutex:
            lock = AdvisoryLock(self._lock_path)
            # Best effort: proceed without the lock rather than fail the caller
            lock.acquire()
            try:
                yield
            finally:
                lock.release()

    def _read(self) -> RegistryDocument:
        with self._locked():
            return self._load()

    def register(
        self,
        transcript_path: Union[str, Path],
        session_id: Optional[str] = None,
        label: Optional[str] = None,
        **metadata: Any,
    ) -> str:
        """Create (or re-register) an active session and return its id."""
        session_id = session_id or str(uuid.uuid4())
        with self._locked():
            doc = self._load()
            existing = doc.sessions.get(session_id)
            now = now_iso()
            session = Session(
                **{
                    **metadata,
                    "id": session_id,
                    "transcript_path": str(transcript_path),
                    "label": label or (existing.label if existing else f"Session {session_id[:8]}"),
                    "created_at": existing.created_at if existing else now,
                    "last_activity": now,
                    "status": "active",
                }
            )
            doc.sessions[session_id] = session
            self._save(doc)
        lifecycle_log.info(f"SESSION | REGISTERED | id={session_id} | transcript={transcript_path}")
        return session_id

    def update_activity(self, session_id: str, **fields: Any) -> Optional[Session]:
        """Merge fields into a session, mark it active and touch last_activity.

        Returns None if the session is unknown (callers treat that as a no-op).
        """
        with self._locked():
            doc = self._load()
            session = doc.sessions.get(session_id)
            if session is None:
                return None
            merged = {**session.model_dump(), **fields}
            merged.update(id=session_id, last_activity=now_iso(), status="active", error=None)
            try:
                updated = Session.model_validate(merged)
            except ValidationError as e:
                raise ValueError(f"Invalid update for session {session_id}: {e}") from e
            doc.sessions[session_id] = updated
            self._save(doc)
            return updated

    def mark_error(self, session_id: str, reason: str) -> Optional[Session]:
        """Flag a session as broken without touching its last_activity."""
        with self._locked():
            doc = self._load()
            session = doc.sessions.get(session_id)
            if session is None:
                return None
            session.status = "error"
            session.error = reason
            self._save(doc)
        lifecycle_log.info(f"SESSION | ERROR | id={session_id} | {reason}")
        return session

    def close_session(self, session_id: str) -> Optional[Session]:
        with self._locked():
            doc = self._load()
            session = doc.sessions.get(session_id)
            if session is None:
                return None
            session.status = "closed"
            self._save(doc)
        lifecycle_log.info(f"SESSION | CLOSED | id={session_id}")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._read().sessions.get(session_id)

    def get_all_sessions(self) -> Dict[str, Session]:
        return dict(self._read().sessions)

    def _is_expired(self, session: Session, now: datetime) -> bool:
        return seconds_since(session.last_activity, now) >= self.timeout_seconds

    def get_active_sessions(self) -> List[Session]:
        """Active sessions that have seen activity within the timeout."""
        now = datetime.now()
        return [
            s for s in self._read().sessions.values()
            if s.status == "active" and not self._is_expired(s, now)
        ]

    def cleanup(self) -> Dict[str, int]:
        """Remove every session inactive for longer than the timeout."""
        now = datetime.now()
        with self._locked():
            doc = self._load()
            before = len(doc.sessions)
            expired = [sid for sid, s in doc.sessions.items() if self._is_expired(s, now)]
            for sid in expired:
                del doc.sessions[sid]
            if expired:
                self._save(doc)
        for sid in expired:
            lifecycle_log.info(f"SESSION | REMOVED | id={sid} | inactive")
        if expired:
            log.info(f"Registry cleanup removed {len(expired)} inactive session(s)")
        return {"before": before, "after": before - len(expired), "removed": len(expired)}

    def stats(self) -> Dict[str, Any]:
        doc = self._read()
        now = datetime.now()
        by_status = {"active": 0, "closed": 0, "error": 0}
        for s in doc.sessions.values():
            by_status[s.status] = by_status.get(s.status, 0) + 1
        live = sum(1 for s in doc.sessions.values() if s.status == "active" and not self._is_expired(s, now))
        return {
            "total": len(doc.sessions),
            "by_status": by_status,
            "active": live,
            "last_checked": doc.last_checked,
            "store": repr(self._store),
        }
