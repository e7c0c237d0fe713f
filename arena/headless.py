"""Run one arena mission from the command line without the HTTP service."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from arena.agents.adapter import AgentAdapter
from arena.config import config
from arena.core.errors import StoreError
from arena.core.event_bus import ArenaEvent, ArenaEventBus, EventKind
from arena.core.models import DIRECTOR_ID
from arena.logging_config import setup_logging
from arena.orchestration.controller import validate_doer_types
from arena.orchestration.router import Router
from arena.orchestration.session_manager import SessionManager
from arena.storage.store import FileSessionStore, SessionRepository

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 150
RULE = "-" * 65


def format_event(event: ArenaEvent, verbose: bool = False) -> Optional[str]:
    """Render one event for the console; ``None`` when it is not shown."""
    data = event.data
    if event.kind is EventKind.MESSAGE:
        arrow = "→" if data["from"] == DIRECTOR_ID else "←"
        content = data["content"]
        if verbose:
            body = content
        else:
            body = "  " + content[:PREVIEW_CHARS].replace("\n", " ")
            if len(content) > PREVIEW_CHARS:
                body += "..."
        return f"[{data['timestamp']}] {data['from']} {arrow} {data['to']}\n{body}\n"
    if event.kind is EventKind.AGENT_STATE:
        return f"[STATE] {data['agentId']}: {data['status']}" if verbose else None
    if event.kind is EventKind.DECISION:
        target = f" → {data['targetDoer']}" if data.get("targetDoer") else ""
        return f"[DECISION] {data['type']}{target}\n"
    if event.kind is EventKind.COMPLETE:
        return f"{RULE}\nMission complete: {data['reason'][:200]}\n"
    if event.kind is EventKind.ERROR:
        return f"[ERROR] {data.get('agentId') or 'arena'} ({data.get('step')}): {data['error']}"
    return None


def _emit(event: ArenaEvent, verbose: bool) -> None:
    line = format_event(event, verbose)
    if line is not None:
        print(line)


async def _print_events(queue: "asyncio.Queue[ArenaEvent]", verbose: bool) -> None:
    while True:
        _emit(await queue.get(), verbose)


def budget_summary(manager: SessionManager) -> List[str]:
    lines = ["Budget usage:"]
    for entry in manager.budget_entries():
        pct = round(entry.turns_used / entry.turns_allocated * 100) if entry.turns_allocated else 0
        lines.append(f"  {entry.agent_id}: {entry.turns_used}/{entry.turns_allocated} turns ({pct}%)")
    return lines


async def run_mission(
    mission: str,
    doer_types: List[str],
    budget: int,
    output_dir: Path,
    *,
    adapter: Optional[AgentAdapter] = None,
    store: Optional[SessionRepository] = None,
    verbose: bool = False,
) -> int:
    """Drive a mission until it ends or pauses; returns a process exit code."""
    if adapter is None:
        from arena.runtime import get_adapter

        adapter = get_adapter()
    store = store or FileSessionStore(config.sessions_dir)
    events = ArenaEventBus()
    manager = SessionManager(store)
    state = manager.start(mission, doer_types, budget)
    print(f"Session started: {state.session.id}\n\n{RULE}\n")

    router = Router(manager, adapter, events)
    router.initialize()
    exit_code = 0
    async with events.subscribe() as queue:
        printer = asyncio.create_task(_print_events(queue, verbose))
        try:
            await router.start()
        except StoreError:
            # Already reported on the event stream; the session is failed.
            exit_code = 1
        except Exception:
            logger.exception("Arena execution failed")
            manager.fail()
            exit_code = 1
        else:
            if router.failed_step is not None:
                print("Stopped after an agent failure; resume the session to retry.")
                manager.pause()
                exit_code = 1
            elif not router.is_finished:
                print("The DIRECTOR is waiting for input; session paused.")
                manager.pause()
        finally:
            printer.cancel()
            while not queue.empty():
                _emit(queue.get_nowait(), verbose)

    output_dir.mkdir(parents=True, exist_ok=True)
    transcript = output_dir / "transcript.md"
    transcript.write_text(manager.export(), encoding="utf-8")
    print(f"Transcript exported to: {transcript}\n")
    print("\n".join(budget_summary(manager)))
    return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arena-run",
        description="Run an arena session in headless mode (for CI/automation)",
    )
    parser.add_argument("-m", "--mission", required=True, help="Mission description")
    parser.add_argument("-d", "--doers", required=True, help="Comma-separated list of DOER types")
    parser.add_argument("-b", "--budget", type=int, default=100, help="Turn budget (default: 100)")
    parser.add_argument("-o", "--output", default="./arena-output", help="Output directory for artifacts")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show full agent messages")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging("DEBUG" if args.verbose else config.log_level)

    doer_types = [d.strip() for d in args.doers.split(",") if d.strip()]
    try:
        validate_doer_types(doer_types)
    except ValueError as exc:
        print(exc, file=sys.stderr)
        return 2

    print(f"Mission: {args.mission}")
    print(f"DOERs: {', '.join(doer_types)}")
    print(f"Budget: {args.budget} turns")
    print(f"Output: {args.output}\n")
    try:
        return asyncio.run(
            run_mission(args.mission, doer_types, args.budget, Path(args.output), verbose=args.verbose)
        )
    except ValueError as exc:
        print(exc, file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
