"""Unit tests for the advisory lock file."""

import time

from narrator.lock import AdvisoryLock


class TestAdvisoryLock:
    def test_acquire_creates_and_release_removes(self, tmp_path):
        path = tmp_path / "sessions.json.lock"
        lock = AdvisoryLock(path)
        assert lock.acquire() is True
        assert lock.held
        assert path.exists()
        assert float(path.read_text()) <= time.time()
        lock.release()
        assert not lock.held
        assert not path.exists()

    def test_context_manager(self, tmp_path):
        path = tmp_path / "x.lock"
        with AdvisoryLock(path) as acquired:
            assert acquired is True
            assert path.exists()
        assert not path.exists()

    def test_second_holder_times_out(self, tmp_path):
        path = tmp_path / "x.lock"
        with AdvisoryLock(path):
            other = AdvisoryLock(path, retries=3, retry_delay=0.001)
            assert other.acquire() is False
            assert not other.held
            # A lock that was never acquired does not remove the holder's file
            other.release()
            assert path.exists()
        assert not path.exists()

    def test_stale_lock_is_taken_over(self, tmp_path):
        path = tmp_path / "x.lock"
        path.write_text(str(time.time() - 60))
        lock = AdvisoryLock(path, stale_after=5.0)
        assert lock.acquire() is True
        lock.release()

    def test_garbage_lock_content_uses_mtime(self, tmp_path):
        path = tmp_path / "x.lock"
        path.write_text("not a timestamp")
        # Fresh mtime, so it is not stale
        lock = AdvisoryLock(path, retries=2, retry_delay=0.001)
        assert lock.acquire() is False

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "x.lock"
        with AdvisoryLock(path) as acquired:
            assert acquired
