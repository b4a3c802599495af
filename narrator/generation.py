"""
GenerationQueue: turns summary text into MP3 files via the speech API.

Items are persisted in a FIFO document. One worker task per queue instance
drains it: a successful item leaves the list, a failed one goes to the back
with its attempt counter bumped, and the drain stops until the next trigger.
After max_retries failures an item stays in the list as terminally failed.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from narrator import config, perf, speech
from narrator.common import AUDIO_DIR, now_iso, pid_alive
from narrator.config import NarratorOptions
from narrator.models import QueueDocument, QueueItem
from narrator.storage import DocumentStore, JsonFileStore

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

Synthesizer = Callable[[str, str, str], bytes]


def safe_name(value: str) -> str:
    """Filesystem-safe version of an id (session ids can be caller supplied).

    Never "", "." or "..", so the result always names a child of the audio dir.
    """
    name = re.sub(r"[^A-Za-z0-9._-]", "_", value)
    if set(name) <= {"."}:
        name = "_" + name
    return name


class GenerationQueue:
    """Persisted audio-generation queue with a single drain worker."""

    def __init__(
        self,
        store: Union[Path, str, DocumentStore],
        audio_dir: Path = AUDIO_DIR,
        options: Optional[NarratorOptions] = None,
        synthesize: Synthesizer = speech.synthesize,
        api_key_loader: Callable[[], Optional[str]] = speech.load_api_key,
    ):
        self._store = JsonFileStore(Path(store)) if isinstance(store, (str, Path)) else store
        self.audio_dir = Path(audio_dir)
        self.options = options or config.options()
        self._synthesize = synthesize
        self._api_key_loader = api_key_loader

        self._draining = False
        self._worker: Optional[asyncio.Task] = None
        self._last_call = 0.0  # monotonic time of the last speech API call

    # ── persistence ────────────────────────────────────────────

    def _load(self) -> QueueDocument:
        try:
            raw = self._store.read()
        except (OSError, ValueError) as e:
            log.warning(f"Failed to load queue, starting empty: {e}")
            return QueueDocument()
        return QueueDocument() if raw is None else QueueDocument.from_raw(raw)

    def _save(self, doc: QueueDocument):
        self._store.write(doc.model_dump(mode="json"))

    def _set_processing(self, processing: bool):
        doc = self._load()
        doc.processing = processing
        doc.processing_pid = os.getpid() if processing else None
        if not processing:
            doc.last_processed = now_iso()
        self._save(doc)

    # ── public API ─────────────────────────────────────────────

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def worker(self) -> Optional[asyncio.Task]:
        return self._worker

    async def enqueue(self, session_id: str, text: str, message_index: int) -> str:
        """Append a pending item and make sure a worker is draining."""
        item = QueueItem(
            id=str(uuid.uuid4()),
            session_id=session_id,
            text=text,
            message_index=message_index,
        )
        doc = self._load()
        doc.items.append(item)
        self._save(doc)
        log.info(f"Queued {item.id} for session {session_id} (index {message_index}, {len(text)} chars)")
        self._ensure_worker()
        return item.id

    def _ensure_worker(self):
        if self._draining or (self._worker is not None and not self._worker.done()):
            return
        self._worker = asyncio.create_task(self.drain(), name="narrator-queue-drain")
        self._worker.add_done_callback(self._on_worker_done)

    def _on_worker_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(f"Queue worker crashed: {exc!r}")
            perf.error("queue_worker_crash", component="queue")

    async def drain(self) -> int:
        """Process eligible items in FIFO order. Returns how many left the queue.

        A second call while a drain is running is a no-op (returns 0).
        """
        if self._draining:
            return 0
        self._draining = True
        finished = 0
        try:
            self._set_processing(True)
            api_key = self._api_key_loader()
            while True:
                item = self._next_eligible()
                if item is None:
                    break

                if not api_key:
                    # Missing credential: skip without consuming a retry
                    self._complete(item.id, artifact_path=None, skipped=True)
                    finished += 1
                    continue

                await self._respect_rate_limit()
                try:
                    audio = await self._call_speech_api(item, api_key)
                    artifact = self._write_artifact(item, audio)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._record_failure(item.id, e)
                    break

                self._complete(item.id, artifact_path=str(artifact))
                finished += 1
        finally:
            self._draining = False
            self._set_processing(False)
        return finished

    async def close(self):
        """Cancel and await the worker task, if any."""
        worker, self._worker = self._worker, None
        if worker is None or worker.done():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    def get_status(self) -> Dict[str, Any]:
        doc = self._load()
        counts = {"pending": 0, "failed": 0, "retrying": 0}
        for item in doc.items:
            if item.status == "pending":
                counts["pending"] += 1
                if item.attempts:
                    counts["retrying"] += 1
            elif item.status == "failed":
                counts["failed"] += 1
        counts["completed"] = doc.completed_count
        counts["skipped"] = doc.skipped_count
        return {
            "items": len(doc.items),
            "counts": counts,
            "processing": self._draining or (doc.processing and pid_alive(doc.processing_pid)),
            "last_processed": doc.last_processed,
            "last_artifact": next((i.artifact_path for i in doc.recent if i.artifact_path), None),
            "configured": bool(self._api_key_loader()),
            "max_retries": self.options.max_retries,
            "store": repr(self._store),
        }

    def get_items(self) -> List[QueueItem]:
        return list(self._load().items)

    def get_session_artifacts(self, session_id: str) -> List[Dict[str, Any]]:
        """Completed audio files for a session, oldest first."""
        session_dir = self.audio_dir / safe_name(session_id)
        if not session_dir.is_dir():
            return []
        artifacts = []
        for path in sorted(session_dir.glob("*.mp3")):
            stat = path.stat()
            artifacts.append({
                "name": path.name,
                "path": str(path),
                "size_bytes": stat.st_size,
                "created_at": datetime.fromtimestamp(stat.st_mtime).isoformat(),
            })
        return artifacts

    # ── worker internals ───────────────────────────────────────

    def _next_eligible(self) -> Optional[QueueItem]:
        max_retries = self.options.max_retries
        for item in self._load().items:
            if item.is_eligible(max_retries):
                return item
        return None

    async def _respect_rate_limit(self):
        wait = self.options.rate_limit_delay - (time.monotonic() - self._last_call)
        if self._last_call and wait > 0:
            await asyncio.sleep(wait)

    async def _call_speech_api(self, item: QueueItem, api_key: str) -> bytes:
        loop = asyncio.get_running_loop()
        self._last_call = time.monotonic()
        with perf.timed("tts_ms", component="queue", session=item.session_id):
            # requests is blocking; its own timeout tears the connection down
            return await loop.run_in_executor(
                None, self._synthesize, item.text, self.options.voice_id, api_key
            )

    def _write_artifact(self, item: QueueItem, audio: bytes) -> Path:
        session_dir = self.audio_dir / safe_name(item.session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        path = session_dir / f"{datetime.now():%Y%m%d-%H%M%S}_{item.message_index:06d}_{item.id[:8]}.mp3"
        path.write_bytes(audio)
        return path

    def _complete(self, item_id: str, artifact_path: Optional[str], skipped: bool = False):
        doc = self._load()
        item = next((i for i in doc.items if i.id == item_id), None)
        if item is None:
            log.warning(f"Queue item {item_id} vanished before completion")
            return
        item.status = "completed"
        item.completed_at = now_iso()
        item.artifact_path = artifact_path
        item.skipped = skipped
        doc.items.remove(item)
        doc.record_completed(item)
        self._save(doc)

        if skipped:
            log.warning(f"No speech API key configured, skipped {item_id}")
            lifecycle_log.info(f"QUEUE | SKIPPED | id={item_id} | session={item.session_id} | no credential")
        else:
            log.info(f"Generated audio for {item_id}: {artifact_path}")
            lifecycle_log.info(f"QUEUE | COMPLETED | id={item_id} | session={item.session_id} | {artifact_path}")

    def _record_failure(self, item_id: str, exc: Exception):
        max_retries = self.options.max_retries
        doc = self._load()
        item = next((i for i in doc.items if i.id == item_id), None)
        if item is None:
            log.warning(f"Queue item {item_id} vanished before failure could be recorded")
            return
        item.attempts += 1
        item.last_error = str(exc)[:500]
        item.status = "failed" if item.attempts >= max_retries else "pending"
        # Back of the line; the rest of the queue waits for the next trigger
        doc.items.remove(item)
        doc.items.append(item)
        self._save(doc)

        perf.error("tts_failed", component="queue")
        if item.status == "failed":
            log.error(f"Giving up on {item_id} after {item.attempts} attempts: {exc}")
            lifecycle_log.info(f"QUEUE | FAILED | id={item_id} | attempts={item.attempts}")
        else:
            log.warning(f"Speech API failed for {item_id} (attempt {item.attempts}/{max_retries}): {exc}")
