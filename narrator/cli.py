#!/usr/bin/env python3
"""CLI for the narrator pipeline: registry, queue, daemon and summarizer commands.

Every command prints one JSON document. Exit code 0 on success, 1 on failure
(with {"ok": false, "error": ...}).
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict

from narrator import config, daemon
from narrator.common import QUEUE_FILE, REGISTRY_FILE
from narrator.generation import GenerationQueue
from narrator.registry import SessionRegistry
from narrator.summarizer import build_report, generate_summary


class CommandError(Exception):
    """A command failed in an expected way (unknown id, bad input)."""


def _registry() -> SessionRegistry:
    return SessionRegistry(REGISTRY_FILE)


def _queue() -> GenerationQueue:
    return GenerationQueue(QUEUE_FILE, options=config.options())


def _session_or_fail(session, session_id: str) -> Dict[str, Any]:
    if session is None:
        raise CommandError(f"Session not found: {session_id}")
    return {"session": session.model_dump()}


def _parse_assignments(pairs: list[str]) -> Dict[str, Any]:
    """key=value pairs; values are parsed as JSON when possible (numbers, booleans)."""
    fields: Dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise CommandError(f"Expected key=value, got {pair!r}")
        key, raw = pair.split("=", 1)
        try:
            fields[key.strip()] = json.loads(raw)
        except ValueError:
            fields[key.strip()] = raw
    return fields


# ── registry ────────────────────────────────────────────────────

def cmd_register(args):
    session_id = _registry().register(
        Path(args.transcript).expanduser().resolve(), session_id=args.id, label=args.label
    )
    return {"session_id": session_id}


def cmd_update(args):
    fields = _parse_assignments(args.set)
    if args.label:
        fields["label"] = args.label
    return _session_or_fail(_registry().update_activity(args.session_id, **fields), args.session_id)


def cmd_list(args):
    sessions = _registry().get_active_sessions()
    return {"count": len(sessions), "sessions": [s.model_dump() for s in sessions]}


def cmd_list_all(args):
    sessions = _registry().get_all_sessions()
    return {"count": len(sessions), "sessions": [s.model_dump() for s in sessions.values()]}


def cmd_get(args):
    return _session_or_fail(_registry().get_session(args.session_id), args.session_id)


def cmd_close(args):
    return _session_or_fail(_registry().close_session(args.session_id), args.session_id)


def cmd_cleanup(args):
    return _registry().cleanup()


def cmd_stats(args):
    return _registry().stats()


# ── queue ───────────────────────────────────────────────────────

async def _enqueue_and_wait(queue: GenerationQueue, args) -> str:
    queue_id = await queue.enqueue(args.session_id, args.text, args.index)
    if queue.worker is not None:
        if args.no_process:
            await queue.close()
        else:
            await queue.worker
    return queue_id


def cmd_queue(args):
    queue = _queue()
    queue_id = asyncio.run(_enqueue_and_wait(queue, args))
    return {"queue_id": queue_id, "status": queue.get_status()}


def cmd_process(args):
    queue = _queue()
    finished = asyncio.run(queue.drain())
    return {"processed": finished, "status": queue.get_status()}


def cmd_queue_status(args):
    return _queue().get_status()


def cmd_audios(args):
    artifacts = _queue().get_session_artifacts(args.session_id)
    return {"session_id": args.session_id, "count": len(artifacts), "audios": artifacts}


# ── daemon ──────────────────────────────────────────────────────

def cmd_daemon_start(args):
    result = daemon.start_background()
    if not result["started"]:
        raise CommandError(f"Daemon already running (PID {result['pid']})")
    return result


def cmd_daemon_status(args):
    return daemon.daemon_status()


def cmd_daemon_stop(args):
    result = daemon.stop()
    if not result["stopped"]:
        raise CommandError(f"Could not stop daemon: {result.get('reason')}")
    return result


def cmd_daemon_run(args):
    daemon.main()
    return {"stopped": True}


# ── summarizer ──────────────────────────────────────────────────

def _summary_kwargs() -> Dict[str, Any]:
    opts = config.options()
    return {
        "max_length": opts.max_summary_length,
        "summary_length": opts.summary_length,
        "exclude_tool_output": opts.exclude_tool_output,
    }


def cmd_generate(args):
    summary = generate_summary(Path(args.transcript), args.from_index, args.label or "", **_summary_kwargs())
    return {"summary": summary.to_dict() if summary else None}


def cmd_report(args):
    return build_report(Path(args.transcript), args.from_index, label=args.label or "", **_summary_kwargs())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="narrator",
        description="Track conversational sessions and narrate their progress"
    )
    groups = parser.add_subparsers(dest="group", help="Command groups")

    # registry
    registry = groups.add_parser("registry", help="Session registry")
    reg_cmds = registry.add_subparsers(dest="command")

    register_parser = reg_cmds.add_parser("register", help="Register a session")
    register_parser.add_argument("transcript", help="Path to the session's JSONL transcript")
    register_parser.add_argument("--id", help="Session id (generated if omitted)")
    register_parser.add_argument("--label", help="Display name")
    register_parser.set_defaults(func=cmd_register)

    update_parser = reg_cmds.add_parser("update", help="Record activity on a session")
    update_parser.add_argument("session_id")
    update_parser.add_argument("--label", help="New display name")
    update_parser.add_argument("--set", nargs="*", metavar="KEY=VALUE", help="Fields to merge")
    update_parser.set_defaults(func=cmd_update)

    reg_cmds.add_parser("list", help="List active sessions").set_defaults(func=cmd_list)
    reg_cmds.add_parser("list-all", help="List every session").set_defaults(func=cmd_list_all)

    get_parser = reg_cmds.add_parser("get", help="Show one session")
    get_parser.add_argument("session_id")
    get_parser.set_defaults(func=cmd_get)

    close_parser = reg_cmds.add_parser("close", help="Mark a session closed")
    close_parser.add_argument("session_id")
    close_parser.set_defaults(func=cmd_close)

    reg_cmds.add_parser("cleanup", help="Remove inactive sessions").set_defaults(func=cmd_cleanup)
    reg_cmds.add_parser("stats", help="Registry statistics").set_defaults(func=cmd_stats)

    # queue
    queue = groups.add_parser("queue", help="Audio generation queue")
    queue_cmds = queue.add_subparsers(dest="command")

    enqueue_parser = queue_cmds.add_parser("queue", help="Queue text for a session")
    enqueue_parser.add_argument("session_id")
    enqueue_parser.add_argument("text")
    enqueue_parser.add_argument("--index", type=int, default=0, help="Transcript index the text ends at")
    enqueue_parser.add_argument("--no-process", action="store_true", help="Queue only, do not drain")
    enqueue_parser.set_defaults(func=cmd_queue)

    queue_cmds.add_parser("process", help="Drain the queue once").set_defaults(func=cmd_process)
    queue_cmds.add_parser("status", help="Queue status").set_defaults(func=cmd_queue_status)

    audios_parser = queue_cmds.add_parser("audios", help="List generated audio for a session")
    audios_parser.add_argument("session_id")
    audios_parser.set_defaults(func=cmd_audios)

    # daemon
    daemon_group = groups.add_parser("daemon", help="Polling daemon")
    daemon_cmds = daemon_group.add_subparsers(dest="command")
    daemon_cmds.add_parser("start", help="Start the daemon in the background").set_defaults(func=cmd_daemon_start)
    daemon_cmds.add_parser("status", help="Show daemon status").set_defaults(func=cmd_daemon_status)
    daemon_cmds.add_parser("stop", help="Stop the daemon").set_defaults(func=cmd_daemon_stop)
    daemon_cmds.add_parser("run", help="Run the daemon in the foreground").set_defaults(func=cmd_daemon_run)

    # summary
    summary = groups.add_parser("summary", help="Transcript summarizer")
    summary_cmds = summary.add_subparsers(dest="command")
    for name, func, help_text in (
        ("generate", cmd_generate, "Summarize new transcript entries"),
        ("report", cmd_report, "Diagnose a transcript"),
    ):
        p = summary_cmds.add_parser(name, help=help_text)
        p.add_argument("transcript")
        p.add_argument("--from", dest="from_index", type=int, default=0, help="Resume index")
        p.add_argument("--label", help="Label prefix")
        p.set_defaults(func=func)

    return parser


def emit(payload: Dict[str, Any]):
    print(json.dumps(payload, indent=2, default=str))


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    try:
        result = args.func(args)
    except Exception as e:
        emit({"ok": False, "error": str(e)})
        return 1

    emit({"ok": True, **result})
    return 0


if __name__ == "__main__":
    sys.exit(main())
