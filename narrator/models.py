"""
Record types for everything the pipeline persists.

Documents are validated on load: a record that does not match its schema is
dropped (with a warning) instead of being trusted, and its valid siblings are
kept. Extra keys written by older versions are ignored.
"""
from __future__ import annotations

import logging
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from narrator.common import now_iso

log = logging.getLogger(__name__)

SessionStatus = Literal["active", "closed", "error"]
ItemStatus = Literal["pending", "completed", "failed"]

# Completed queue items kept on the queue document, newest first
RECENT_LIMIT = 20


def _as_count(value: Any) -> int:
    return value if isinstance(value, int) and value >= 0 else 0


def _valid_items(raw_items: Any) -> list:
    if not isinstance(raw_items, list):
        return []
    items = []
    for record in raw_items:
        try:
            items.append(QueueItem.model_validate(record))
        except ValidationError as e:
            log.warning(f"Dropping invalid queue item: {e.error_count()} error(s)")
    return items


class Session(BaseModel):
    id: str
    transcript_path: str
    label: str
    created_at: str = Field(default_factory=now_iso)
    last_activity: str = Field(default_factory=now_iso)
    status: SessionStatus = "active"
    message_count: int = 0
    summary_cursor: int = 0
    last_queued_at: Optional[str] = None
    error: Optional[str] = None


class QueueItem(BaseModel):
    id: str
    session_id: str
    text: str
    message_index: int
    status: ItemStatus = "pending"
    attempts: int = 0
    created_at: str = Field(default_factory=now_iso)
    completed_at: Optional[str] = None
    artifact_path: Optional[str] = None
    last_error: Optional[str] = None
    skipped: bool = False

    def is_eligible(self, max_retries: int) -> bool:
        """Whether the worker may attempt this item."""
        if self.status == "pending":
            return True
        return self.status == "failed" and self.attempts < max_retries


class RegistryDocument(BaseModel):
    sessions: dict[str, Session] = Field(default_factory=dict)
    last_checked: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "RegistryDocument":
        if not isinstance(raw, dict):
            log.warning(f"Registry document has unexpected shape ({type(raw).__name__}), starting empty")
            return cls()
        sessions = {}
        raw_sessions = raw.get("sessions") or {}
        if not isinstance(raw_sessions, dict):
            raw_sessions = {}
        for session_id, record in raw_sessions.items():
            try:
                sessions[session_id] = Session.model_validate(record)
            except ValidationError as e:
                log.warning(f"Dropping invalid session record {session_id}: {e.error_count()} error(s)")
        last_checked = raw.get("last_checked")
        return cls(sessions=sessions, last_checked=last_checked if isinstance(last_checked, str) else None)


class QueueDocument(BaseModel):
    items: list[QueueItem] = Field(default_factory=list)
    processing: bool = False
    # PID of the process draining, so a crashed drain is not reported forever
    processing_pid: Optional[int] = None
    last_processed: Optional[str] = None
    # Completed items leave the list; these keep the totals and the latest records
    completed_count: int = 0
    skipped_count: int = 0
    recent: list[QueueItem] = Field(default_factory=list)

    def record_completed(self, item: QueueItem) -> None:
        self.completed_count += 1
        if item.skipped:
            self.skipped_count += 1
        self.recent = [item, *self.recent][:RECENT_LIMIT]

    @classmethod
    def from_raw(cls, raw: Any) -> "QueueDocument":
        if not isinstance(raw, dict):
            log.warning(f"Queue document has unexpected shape ({type(raw).__name__}), starting empty")
            return cls()
        last_processed = raw.get("last_processed")
        processing_pid = raw.get("processing_pid")
        return cls(
            items=_valid_items(raw.get("items")),
            processing=bool(raw.get("processing", False)),
            processing_pid=processing_pid if isinstance(processing_pid, int) else None,
            recent=_valid_items(raw.get("recent"))[:RECENT_LIMIT],
            completed_count=_as_count(raw.get("completed_count")),
            skipped_count=_as_count(raw.get("skipped_count")),
            last_processed=last_processed if isinstance(last_processed, str) else None,
        )
