"""
Shared fixtures for narrator tests.

Tests exercise the registry, summarizer, queue and daemon against temporary
files. The speech API is never called: queues get a FakeSynthesizer that
records calls and can be told to fail.
"""
from __future__ import annotations

import json
import os
import sys
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional
from unittest.mock import patch

import pytest

# Keep every default path away from the real home directory
os.environ.setdefault("NARRATOR_HOME", tempfile.mkdtemp(prefix="narrator-test-"))

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from narrator import perf
from narrator.config import NarratorOptions


class FakeSynthesizer:
    """Stands in for narrator.speech.synthesize."""

    def __init__(self, fail_times: int = 0, audio: bytes = b"ID3fake-mp3-bytes"):
        self.fail_times = fail_times
        self.audio = audio
        self.calls: list[tuple[str, str, str]] = []
        self.active = 0
        self.max_active = 0

    def __call__(self, text: str, voice_id: str, api_key: str) -> bytes:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.calls.append((text, voice_id, api_key))
            if len(self.calls) <= self.fail_times:
                raise RuntimeError(f"simulated API failure #{len(self.calls)}")
            return self.audio
        finally:
            self.active -= 1


# ── Fixtures ────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def temp_perf_dir(tmp_path):
    """Metrics go to a temporary directory."""
    perf_dir = tmp_path / "perf"
    with patch.object(perf, "PERF_DIR", perf_dir):
        yield perf_dir


@pytest.fixture
def registry_file(tmp_path):
    return tmp_path / "state" / "sessions.json"


@pytest.fixture
def registry(registry_file):
    from narrator.registry import SessionRegistry
    return SessionRegistry(registry_file)


@pytest.fixture
def options():
    return NarratorOptions(rate_limit_delay=0, max_retries=3)


@pytest.fixture
def synth():
    return FakeSynthesizer()


@pytest.fixture
def make_queue(tmp_path, options):
    """Factory for GenerationQueue instances sharing one queue file."""
    from narrator.generation import GenerationQueue

    def _make(synthesize=None, api_key: Optional[str] = "test-key", opts: Optional[NarratorOptions] = None):
        return GenerationQueue(
            tmp_path / "state" / "queue.json",
            audio_dir=tmp_path / "audio",
            options=opts or options,
            synthesize=synthesize or FakeSynthesizer(),
            api_key_loader=lambda: api_key,
        )
    return _make


@pytest.fixture
def make_transcript(tmp_path):
    """Write a JSONL transcript. Entries are dicts (serialized) or raw strings (written as-is)."""
    def _make(entries: list[Any], name: str = "transcript.jsonl") -> Path:
        path = tmp_path / "transcripts" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [e if isinstance(e, str) else json.dumps(e) for e in entries]
        path.write_text("\n".join(lines) + ("\n" if lines else ""))
        return path
    return _make


@pytest.fixture
def append_transcript():
    def _append(path: Path, entries: list[Any]):
        with open(path, "a") as f:
            for e in entries:
                f.write((e if isinstance(e, str) else json.dumps(e)) + "\n")
    return _append


def user_entry(text: str) -> dict:
    return {"type": "user", "message": {"role": "user", "content": text}, "timestamp": datetime.now().isoformat()}


def assistant_entry(text: str = "", tools: int = 0) -> dict:
    content = []
    if text:
        content.append({"type": "text", "text": text})
    for i in range(tools):
        content.append({"type": "tool_use", "id": f"tool_{i}", "name": "Bash", "input": {"command": "ls"}})
    return {"type": "assistant", "message": {"role": "assistant", "content": content}, "timestamp": datetime.now().isoformat()}


def tool_result_entry() -> dict:
    return {"type": "user", "message": {"role": "user", "content": [
        {"type": "tool_result", "tool_use_id": "tool_0", "content": "file.txt"}
    ]}}


def conversation(pairs: int) -> list[dict]:
    """pairs user/assistant exchanges."""
    entries = []
    for i in range(pairs):
        entries.append(user_entry(f"Question number {i + 1} about the parser?"))
        entries.append(assistant_entry(f"Answer {i + 1} explains the parser. More details follow."))
    return entries


def age_session(registry, session_id: str, minutes: float):
    """Rewrite a session's last_activity to `minutes` ago, bypassing update_activity."""
    raw = registry.store.read()
    raw["sessions"][session_id]["last_activity"] = (datetime.now() - timedelta(minutes=minutes)).isoformat()
    registry.store.write(raw)
