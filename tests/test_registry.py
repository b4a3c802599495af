"""
Tests for the SessionRegistry.

Covers:
- Register, get, update, close operations
- Persistence across instances
- Active-session filtering and cleanup by inactivity
- Corrupted / invalid documents degrade to an empty registry
- Lock file is released after every operation
- Concurrent writers from separate processes never corrupt the document
"""
import json
import os
import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from narrator.registry import SessionRegistry
from conftest import age_session

PROJECT_ROOT = Path(__file__).parent.parent


class TestRegistryBasicOps:
    """Test basic registry operations."""

    def test_register_and_get(self, registry):
        sid = registry.register("/tmp/t.jsonl", label="Parser work")
        session = registry.get_session(sid)
        assert session is not None
        assert session.transcript_path == "/tmp/t.jsonl"
        assert session.label == "Parser work"
        assert session.status == "active"
        assert session.message_count == 0
        assert session.summary_cursor == 0
        assert session.last_queued_at is None

    def test_register_generates_id_and_default_label(self, registry):
        sid = registry.register("/tmp/t.jsonl")
        assert len(sid) == 36
        assert registry.get_session(sid).label == f"Session {sid[:8]}"

    def test_register_with_caller_id(self, registry):
        sid = registry.register("/tmp/t.jsonl", session_id="abc-123")
        assert sid == "abc-123"
        assert registry.get_session("abc-123") is not None

    def test_reregister_preserves_created_at(self, registry):
        registry.register("/tmp/t.jsonl", session_id="s1", label="One")
        created = registry.get_session("s1").created_at
        time.sleep(0.01)
        registry.register("/tmp/other.jsonl", session_id="s1")
        session = registry.get_session("s1")
        assert session.created_at == created
        assert session.label == "One"
        assert session.transcript_path == "/tmp/other.jsonl"

    def test_get_nonexistent(self, registry):
        assert registry.get_session("nonexistent") is None

    def test_update_activity_merges_fields(self, registry):
        sid = registry.register("/tmp/t.jsonl")
        updated = registry.update_activity(sid, message_count=6, summary_cursor=5)
        assert updated.message_count == 6
        assert updated.summary_cursor == 5
        assert registry.get_session(sid).message_count == 6

    def test_update_activity_reactivates(self, registry):
        sid = registry.register("/tmp/t.jsonl")
        registry.close_session(sid)
        before = registry.get_session(sid).last_activity
        time.sleep(0.01)
        updated = registry.update_activity(sid, label="renamed")
        assert updated.status == "active"
        assert updated.label == "renamed"
        assert updated.last_activity > before

    def test_update_activity_unknown_is_noop(self, registry):
        assert registry.update_activity("nonexistent", message_count=3) is None
        assert registry.get_all_sessions() == {}

    def test_update_activity_rejects_invalid_values(self, registry):
        sid = registry.register("/tmp/t.jsonl")
        with pytest.raises(ValueError):
            registry.update_activity(sid, message_count="lots")

    def test_close_session(self, registry):
        sid = registry.register("/tmp/t.jsonl")
        assert registry.close_session(sid).status == "closed"
        assert registry.get_active_sessions() == []

    def test_close_unknown_session(self, registry):
        assert registry.close_session("nonexistent") is None

    def test_mark_error_keeps_last_activity(self, registry):
        sid = registry.register("/tmp/t.jsonl")
        before = registry.get_session(sid).last_activity
        session = registry.mark_error(sid, "transcript not found")
        assert session.status == "error"
        assert session.error == "transcript not found"
        assert registry.get_session(sid).last_activity == before

    def test_get_all_returns_copy(self, registry):
        registry.register("/tmp/a.jsonl", session_id="a")
        all_data = registry.get_all_sessions()
        all_data.pop("a")
        assert registry.get_session("a") is not None


class TestRegistryPersistence:
    """Test that the registry persists across instances."""

    def test_persists_to_disk(self, registry_file):
        r1 = SessionRegistry(registry_file)
        r1.register("/tmp/t.jsonl", session_id="s1")

        r2 = SessionRegistry(registry_file)
        assert r2.get_session("s1") is not None

    def test_document_shape(self, registry, registry_file):
        registry.register("/tmp/t.jsonl", session_id="s1")
        doc = json.loads(registry_file.read_text())
        assert set(doc) == {"sessions", "last_checked"}
        assert doc["sessions"]["s1"]["id"] == "s1"
        assert doc["last_checked"]

    def test_lock_released_after_operations(self, registry, registry_file):
        registry.register("/tmp/t.jsonl", session_id="s1")
        registry.get_active_sessions()
        registry.cleanup()
        assert not registry_file.with_name(registry_file.name + ".lock").exists()

    def test_lock_released_when_write_fails(self, registry, registry_file):
        with patch.object(registry.store, "write", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                registry.register("/tmp/t.jsonl", session_id="s1")
        assert not registry_file.with_name(registry_file.name + ".lock").exists()
        # The next operation is not blocked by a leftover lock
        registry.register("/tmp/t.jsonl", session_id="s2")
        assert registry.get_session("s2") is not None

    def test_corrupted_file_loads_empty(self, registry_file):
        registry_file.parent.mkdir(parents=True, exist_ok=True)
        registry_file.write_text("{not json")
        r = SessionRegistry(registry_file)
        assert r.get_all_sessions() == {}
        assert r.stats()["total"] == 0

    def test_corrupted_file_recovers_on_write(self, registry_file):
        registry_file.parent.mkdir(parents=True, exist_ok=True)
        registry_file.write_text("[1, 2")
        r = SessionRegistry(registry_file)
        r.register("/tmp/t.jsonl", session_id="s1")
        assert json.loads(registry_file.read_text())["sessions"]["s1"]["id"] == "s1"

    def test_invalid_record_dropped_valid_kept(self, registry_file):
        registry_file.parent.mkdir(parents=True, exist_ok=True)
        registry_file.write_text(json.dumps({
            "sessions": {
                "good": {"id": "good", "transcript_path": "/tmp/t.jsonl", "label": "ok"},
                "bad": {"id": "bad", "status": "exploded"},
            },
            "last_checked": None,
        }))
        r = SessionRegistry(registry_file)
        assert set(r.get_all_sessions()) == {"good"}

    def test_stale_lock_is_ignored(self, registry, registry_file):
        registry_file.parent.mkdir(parents=True, exist_ok=True)
        lock = registry_file.with_name(registry_file.name + ".lock")
        lock.write_text(str(time.time() - 60))
        registry.register("/tmp/t.jsonl", session_id="s1")
        assert registry.get_session("s1") is not None
        assert not lock.exists()


class TestActiveSessionsAndCleanup:
    def test_active_excludes_inactive(self, registry):
        fresh = registry.register("/tmp/a.jsonl")
        old = registry.register("/tmp/b.jsonl")
        age_session(registry, old, minutes=31)
        active_ids = [s.id for s in registry.get_active_sessions()]
        assert active_ids == [fresh]

    def test_active_excludes_error_and_closed(self, registry):
        a = registry.register("/tmp/a.jsonl")
        b = registry.register("/tmp/b.jsonl")
        c = registry.register("/tmp/c.jsonl")
        registry.close_session(b)
        registry.mark_error(c, "gone")
        assert [s.id for s in registry.get_active_sessions()] == [a]

    def test_cleanup_removes_only_expired(self, registry):
        fresh = registry.register("/tmp/a.jsonl")
        recent = registry.register("/tmp/b.jsonl")
        old = registry.register("/tmp/c.jsonl")
        closed_old = registry.register("/tmp/d.jsonl")
        registry.close_session(closed_old)
        age_session(registry, recent, minutes=29)
        age_session(registry, old, minutes=31)
        age_session(registry, closed_old, minutes=120)

        result = registry.cleanup()

        assert result == {"before": 4, "after": 2, "removed": 2}
        remaining = registry.get_all_sessions()
        assert set(remaining) == {fresh, recent}
        assert old not in [s.id for s in registry.get_active_sessions()]

    def test_cleanup_without_changes_does_not_write(self, registry, registry_file):
        registry.register("/tmp/a.jsonl")
        mtime = registry_file.stat().st_mtime_ns
        time.sleep(0.01)
        assert registry.cleanup()["removed"] == 0
        assert registry_file.stat().st_mtime_ns == mtime

    def test_stats(self, registry):
        a = registry.register("/tmp/a.jsonl")
        registry.register("/tmp/b.jsonl")
        registry.close_session(a)
        stats = registry.stats()
        assert stats["total"] == 2
        assert stats["by_status"]["closed"] == 1
        assert stats["active"] == 1


WRITER_SCRIPT = """
import sys
from narrator.registry import SessionRegistry
registry = SessionRegistry(sys.argv[1])
for i in range(int(sys.argv[3])):
    registry.register("/tmp/t.jsonl", session_id=f"{sys.argv[2]}-{i}")
    registry.update_activity(f"{sys.argv[2]}-{i}", message_count=i)
"""


class TestRegistryConcurrency:
    """Test registry under concurrent access."""

    def test_many_rapid_writes(self, registry):
        for i in range(50):
            registry.register("/tmp/t.jsonl", session_id=f"s{i}")
            registry.update_activity(f"s{i}", message_count=i)
        assert len(registry.get_all_sessions()) == 50

    def test_threads_do_not_lose_updates(self, registry):
        from concurrent.futures import ThreadPoolExecutor

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: registry.register("/tmp/t.jsonl", session_id=f"t{i}"), range(40)))
        assert len(registry.get_all_sessions()) == 40

    def test_two_processes_never_corrupt_document(self, registry_file):
        env = {**os.environ, "PYTHONPATH": str(PROJECT_ROOT)}
        procs = [
            subprocess.Popen(
                [sys.executable, "-c", WRITER_SCRIPT, str(registry_file), name, "25"],
                cwd=PROJECT_ROOT, env=env,
            )
            for name in ("p1", "p2")
        ]
        for p in procs:
            assert p.wait(timeout=60) == 0

        doc = json.loads(registry_file.read_text())
        assert isinstance(doc["sessions"], dict)
        # Last-writer-wins may drop some records, but every surviving one is whole
        for sid, record in doc["sessions"].items():
            assert record["id"] == sid
        assert not registry_file.with_name(registry_file.name + ".lock").exists()
