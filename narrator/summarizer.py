#!/usr/bin/env python3
"""
Incremental summarizer: turns the new tail of a session transcript into a
short, narration-ready sentence or two.

Transcripts are append-only JSONL files, one record per line:
    {"type": "user", "message": {"role": "user", "content": "..."}, "timestamp": "..."}
    {"type": "assistant", "message": {"content": [{"type": "text", "text": "..."},
                                                   {"type": "tool_use", ...}]}}

Indices are positions among the file's non-empty lines, so they stay stable as
the file grows and can be stored as a resume cursor.
"""
from __future__ import annotations

import json
import logging
import re
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from narrator.common import now_iso

log = logging.getLogger(__name__)

ELLIPSIS = "..."
MIN_NEW_ENTRIES = 2
DEFAULT_MAX_LENGTH = 500
USER_SNIPPET_LENGTH = 100
ASSISTANT_SNIPPET_LENGTH = 150
# Assistant turns with a tool call and less prose than this are noise
TOOL_NOISE_THRESHOLD = 50
# Break at a word only if it keeps at least this share of the allowed length
WORD_BOUNDARY_RATIO = 0.7

SENTENCES = {"short": 1, "medium": 2, "long": 3}

_CODE_FENCE_RE = re.compile(r"```.*?(```|$)", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`([^`]*)`")
_TOOL_MARKUP_RE = re.compile(
    r"<(function_calls|invoke|tool_use|tool_call|tool_result|parameter)\b.*?(</\1>|$)",
    re.DOTALL | re.IGNORECASE,
)
_TAG_RE = re.compile(r"</?[A-Za-z][\w:-]*(\s[^<>]*)?/?>")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class Entry:
    index: int
    role: str
    text: str = ""
    tool_calls: int = 0
    timestamp: str = ""
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class Summary:
    text: str
    message_count: int
    start_index: int
    end_index: int
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


def _read_lines(transcript_path: Path) -> list[str]:
    """Non-empty lines of a transcript. Missing or unreadable files read as empty.

    Records are separated by LF only. JSON strings may carry U+2028, U+2029 or
    NEL unescaped, and str.splitlines() would break a record on those.
    """
    try:
        with open(transcript_path, "r", encoding="utf-8", errors="replace", newline="") as f:
            return [line for line in f.read().split("\n") if line.strip()]
    except FileNotFoundError:
        return []
    except OSError as e:
        log.warning(f"Failed to read transcript {transcript_path}: {e}")
        return []


def transcript_length(transcript_path: Path) -> int:
    """Number of entries (non-empty lines) currently in the transcript."""
    return len(_read_lines(Path(transcript_path)))


def _to_entry(index: int, obj: dict) -> Entry:
    message = obj.get("message") if isinstance(obj.get("message"), dict) else {}
    role = obj.get("type") or message.get("role") or obj.get("role") or "unknown"
    content = message.get("content", obj.get("content", ""))

    texts: list[str] = []
    tool_calls = 0
    only_tool_results = False
    if isinstance(content, str):
        texts.append(content)
    elif isinstance(content, list):
        block_types = []
        for block in content:
            if isinstance(block, str):
                texts.append(block)
                block_types.append("text")
                continue
            if not isinstance(block, dict):
                continue
            block_type = block.get("type", "")
            block_types.append(block_type)
            if block_type == "text":
                texts.append(block.get("text", ""))
            elif block_type == "tool_use":
                tool_calls += 1
        only_tool_results = bool(block_types) and all(t == "tool_result" for t in block_types)

    # Tool results come back as user-typed records but are not user turns
    if role == "user" and only_tool_results:
        role = "tool_result"

    return Entry(
        index=index,
        role=role,
        text="\n".join(t for t in texts if t).strip(),
        tool_calls=tool_calls,
        timestamp=obj.get("timestamp", "") or "",
        raw=obj,
    )


def parse_transcript(transcript_path: Path, from_index: int = 0) -> list[Entry]:
    """Parse entries at absolute index >= from_index. Malformed lines are skipped."""
    lines = _read_lines(Path(transcript_path))
    entries = []
    for index in range(max(0, from_index), len(lines)):
        try:
            obj = json.loads(lines[index])
        except json.JSONDecodeError:
            log.debug(f"Skipping malformed line {index} in {transcript_path}")
            continue
        if not isinstance(obj, dict):
            continue
        entries.append(_to_entry(index, obj))
    return entries


def _strip_tool_markup(text: str) -> str:
    return _TOOL_MARKUP_RE.sub(" ", text)


def is_tool_noise(entry: Entry) -> bool:
    """An assistant turn that is little more than a tool invocation."""
    prose = _strip_tool_markup(entry.text).strip()
    has_tool = entry.tool_calls > 0 or prose != entry.text.strip()
    return has_tool and len(prose) < TOOL_NOISE_THRESHOLD


def filter_meaningful(entries: list[Entry], exclude_tool_output: bool = True) -> list[Entry]:
    """Keep user turns, and assistant turns that are not tool-call noise."""
    kept = []
    for entry in entries:
        if entry.role == "user":
            kept.append(entry)
        elif entry.role == "assistant":
            if exclude_tool_output and is_tool_noise(entry):
                continue
            kept.append(entry)
    return kept


def clean_assistant_text(text: str) -> str:
    """Strip code blocks, tool-call markup and tags, and collapse whitespace."""
    text = _CODE_FENCE_RE.sub(" ", text)
    text = _strip_tool_markup(text)
    text = _TAG_RE.sub(" ", text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def first_sentences(text: str, count: int = 1) -> str:
    sentences = [s for s in _SENTENCE_RE.split(text) if s.strip()]
    return " ".join(sentences[:max(1, count)])


def truncate(text: str, max_length: int) -> str:
    """Shorten text to max_length (plus ellipsis), breaking at a word where reasonable."""
    if len(text) <= max_length:
        return text
    cut = text[:max(0, max_length)]
    boundary = max(cut.rfind(" "), cut.rfind("\n"), cut.rfind("\t"))
    if boundary > max_length * WORD_BOUNDARY_RATIO:
        cut = cut[:boundary]
    return cut.rstrip() + ELLIPSIS


def _last(entries: list[Entry], role: str, clean=None) -> str:
    for entry in reversed(entries):
        if entry.role != role:
            continue
        text = clean(entry.text) if clean else _WHITESPACE_RE.sub(" ", entry.text).strip()
        if text:
            return text
    return ""


def generate_summary(
    transcript_path: Path,
    from_index: int,
    label: str = "",
    max_length: int = DEFAULT_MAX_LENGTH,
    min_entries: int = MIN_NEW_ENTRIES,
    summary_length: str = "short",
    exclude_tool_output: bool = True,
) -> Optional[Summary]:
    """Summarize entries from from_index onward, or None if there is nothing worth narrating."""
    entries = parse_transcript(transcript_path, from_index)
    if len(entries) < min_entries:
        return None

    meaningful = filter_meaningful(entries, exclude_tool_output=exclude_tool_output)
    if not meaningful:
        return None

    user_text = _last(meaningful, "user")
    assistant_text = _last(meaningful, "assistant", clean=clean_assistant_text)

    parts = []
    if label:
        parts.append(f"{label}.")
    if user_text:
        parts.append(f"You asked: {truncate(user_text, USER_SNIPPET_LENGTH)}")
    if assistant_text:
        sentences = first_sentences(assistant_text, SENTENCES.get(summary_length, 1))
        parts.append(f"Reply: {truncate(sentences, ASSISTANT_SNIPPET_LENGTH)}")
    if not user_text and not assistant_text:
        return None

    return Summary(
        text=truncate(" ".join(parts), max_length),
        message_count=len(meaningful),
        start_index=entries[0].index,
        end_index=meaningful[-1].index,
        timestamp=now_iso(),
    )


def build_report(transcript_path: Path, from_index: int = 0, **summary_kwargs: Any) -> dict:
    """Diagnostics for one transcript: what parses, what survives filtering, what would be said."""
    transcript_path = Path(transcript_path)
    total = transcript_length(transcript_path)
    entries = parse_transcript(transcript_path, from_index)
    scanned = max(0, total - max(0, from_index))
    roles: dict[str, int] = {}
    for entry in entries:
        roles[entry.role] = roles.get(entry.role, 0) + 1
    meaningful = filter_meaningful(entries, exclude_tool_output=summary_kwargs.get("exclude_tool_output", True))
    summary = generate_summary(transcript_path, from_index, **summary_kwargs)
    return {
        "transcript": str(transcript_path),
        "exists": transcript_path.exists(),
        "total_lines": total,
        "from_index": from_index,
        "parsed": len(entries),
        "malformed": scanned - len(entries),
        "roles": roles,
        "meaningful": len(meaningful),
        "summary": summary.to_dict() if summary else None,
    }


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: summarizer.py <transcript.jsonl> [from_index] [label]")
        sys.exit(1)

    path = Path(sys.argv[1])
    start = int(sys.argv[2]) if len(sys.argv) > 2 else 0
    result = generate_summary(path, start, sys.argv[3] if len(sys.argv) > 3 else "")
    print(result.text if result else "Nothing to summarize.")
