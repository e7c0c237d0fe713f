"""Persistent storage for arena sessions.

Each mission lives in its own directory keyed by session id::

    <base>/<session-id>/session.json        mission record, rewritten on update
    <base>/<session-id>/transcript.jsonl    append-only messages
    <base>/<session-id>/decision-log.jsonl  append-only director decisions
    <base>/<session-id>/task-board.json     task board snapshot
    <base>/<session-id>/budget-report.json  latest budget entries

The router and director only see the ``SessionRepository`` interface, so tests
can swap in ``InMemorySessionStore``.
"""
from __future__ import annotations

import abc
import json
import logging
import os
import re
import tempfile
from copy import deepcopy
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from arena.core.errors import SessionNotFoundError, StoreError
from arena.core.models import (
    ID_PATTERN,
    BudgetEntry,
    DecisionRecord,
    Message,
    MessageType,
    MissionSession,
    SessionStatus,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"
TRANSCRIPT_FILE = "transcript.jsonl"
DECISION_LOG_FILE = "decision-log.jsonl"
TASK_BOARD_FILE = "task-board.json"
BUDGET_REPORT_FILE = "budget-report.json"

VALID_SESSION_ID = re.compile(ID_PATTERN)

_UPDATABLE_FIELDS = {"turns_used", "status", "phase", "mission", "doers", "budget"}


class SessionRepository(abc.ABC):
    """Storage contract for mission sessions: get/put/append by session id."""

    @abc.abstractmethod
    def create_session(
        self, session_id: str, mission: str, doers: List[str], budget: int
    ) -> MissionSession:
        """Persist a fresh running session with empty logs."""

    @abc.abstractmethod
    def get_session(self, session_id: str) -> Optional[MissionSession]:
        """Return the stored session or ``None``."""

    @abc.abstractmethod
    def _put_session(self, session: MissionSession) -> None:
        """Overwrite the stored session record."""

    @abc.abstractmethod
    def list_sessions(self) -> List[MissionSession]:
        """Return every stored session, most recently updated first."""

    @abc.abstractmethod
    def append_message(self, session_id: str, message: Message) -> None:
        """Append one message to the transcript."""

    @abc.abstractmethod
    def get_messages(self, session_id: str) -> List[Message]:
        """Return the transcript in write order."""

    @abc.abstractmethod
    def append_decision(self, session_id: str, record: DecisionRecord) -> None:
        """Append one record to the decision log."""

    @abc.abstractmethod
    def get_decisions(self, session_id: str) -> List[DecisionRecord]:
        """Return the decision log in write order."""

    @abc.abstractmethod
    def save_task_board(self, session_id: str, snapshot: Dict[str, Any]) -> None:
        """Replace the task board snapshot."""

    @abc.abstractmethod
    def load_task_board(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Return the task board snapshot, if any."""

    @abc.abstractmethod
    def update_budget(self, session_id: str, entries: List[BudgetEntry]) -> None:
        """Replace the budget report."""

    @abc.abstractmethod
    def get_budget(self, session_id: str) -> List[BudgetEntry]:
        """Return the latest budget report entries."""

    def update_session(self, session_id: str, **updates: Any) -> Optional[MissionSession]:
        """Apply field updates and bump ``updated_at``."""
        session = self.get_session(session_id)
        if session is None:
            return None
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")
        if "status" in updates:
            updates["status"] = SessionStatus(updates["status"])
        updated = replace(session, **updates, updated_at=utc_now_iso())
        self._put_session(updated)
        return updated

    def require_session(self, session_id: str) -> MissionSession:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def export_markdown(self, session_id: str) -> str:
        """Render the session header and transcript as markdown."""
        session = self.get_session(session_id)
        if session is None:
            return ""
        return render_markdown(session, self.get_messages(session_id))


class FileSessionStore(SessionRepository):
    """Directory-per-session store on the local filesystem."""

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _dir(self, session_id: str) -> Path:
        if not VALID_SESSION_ID.match(session_id):
            raise ValueError(f"Invalid session id '{session_id}'")
        return self.base_dir / session_id

    def _path(self, session_id: str, name: str) -> Path:
        return self._dir(session_id) / name

    def _write_json(self, path: Path, obj: Any) -> None:
        """Atomic write: temp file, fsync, then rename."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(json.dumps(obj, indent=2, ensure_ascii=False))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise StoreError(f"Failed to write {path}: {exc}") from exc

    def _append_jsonl(self, path: Path, obj: Dict[str, Any]) -> None:
        if not path.parent.exists():
            raise StoreError(f"Session directory missing: {path.parent}")
        try:
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            logger.error("Failed to append to %s: %s", path, exc)
            raise StoreError(f"Failed to append to {path}: {exc}") from exc

    def _read_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StoreError(f"Invalid JSON in {path}: {exc}") from exc

    def _read_jsonl(self, path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        rows = []
        for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise StoreError(f"Invalid JSONL at {path}:{lineno}: {exc}") from exc
        return rows

    def create_session(
        self, session_id: str, mission: str, doers: List[str], budget: int
    ) -> MissionSession:
        session = MissionSession(id=session_id, mission=mission, doers=list(doers), budget=budget)
        directory = self._dir(session_id)
        try:
            directory.mkdir(parents=True, exist_ok=False)
        except FileExistsError as exc:
            raise StoreError(f"Session already exists: {session_id}") from exc
        except OSError as exc:
            raise StoreError(f"Failed to create {directory}: {exc}") from exc

        self._put_session(session)
        for name in (TRANSCRIPT_FILE, DECISION_LOG_FILE):
            try:
                (directory / name).touch()
            except OSError as exc:
                raise StoreError(f"Failed to create {directory / name}: {exc}") from exc
        self._write_json(directory / TASK_BOARD_FILE, {"tasks": [], "transitions": []})
        self._write_json(directory / BUDGET_REPORT_FILE, {"entries": []})
        logger.info("Created session %s in %s", session_id, directory)
        return session

    def get_session(self, session_id: str) -> Optional[MissionSession]:
        data = self._read_json(self._path(session_id, SESSION_FILE))
        return MissionSession.from_dict(data) if data else None

    def _put_session(self, session: MissionSession) -> None:
        self._write_json(self._path(session.id, SESSION_FILE), session.to_dict())

    def list_sessions(self) -> List[MissionSession]:
        sessions = []
        for entry in self.base_dir.iterdir():
            if not entry.is_dir() or not VALID_SESSION_ID.match(entry.name):
                continue
            try:
                session = self.get_session(entry.name)
            except StoreError as exc:
                logger.warning("Skipping unreadable session %s: %s", entry.name, exc)
                continue
            if session is not None:
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    def append_message(self, session_id: str, message: Message) -> None:
        self._append_jsonl(self._path(session_id, TRANSCRIPT_FILE), message.to_dict())

    def get_messages(self, session_id: str) -> List[Message]:
        return [Message.from_dict(row) for row in self._read_jsonl(self._path(session_id, TRANSCRIPT_FILE))]

    def append_decision(self, session_id: str, record: DecisionRecord) -> None:
        self._append_jsonl(self._path(session_id, DECISION_LOG_FILE), record.to_dict())

    def get_decisions(self, session_id: str) -> List[DecisionRecord]:
        return [
            DecisionRecord.from_dict(row)
            for row in self._read_jsonl(self._path(session_id, DECISION_LOG_FILE))
        ]

    def save_task_board(self, session_id: str, snapshot: Dict[str, Any]) -> None:
        self._write_json(self._path(session_id, TASK_BOARD_FILE), snapshot)

    def load_task_board(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._read_json(self._path(session_id, TASK_BOARD_FILE))

    def update_budget(self, session_id: str, entries: List[BudgetEntry]) -> None:
        self._write_json(
            self._path(session_id, BUDGET_REPORT_FILE),
            {"entries": [entry.to_dict() for entry in entries], "updatedAt": utc_now_iso()},
        )

    def get_budget(self, session_id: str) -> List[BudgetEntry]:
        data = self._read_json(self._path(session_id, BUDGET_REPORT_FILE)) or {}
        return [BudgetEntry.from_dict(raw) for raw in data.get("entries", [])]


class InMemorySessionStore(SessionRepository):
    """Dictionary-backed store with the same semantics as the file store."""

    def __init__(self) -> None:
        self._sessions: Dict[str, MissionSession] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._decisions: Dict[str, List[DecisionRecord]] = {}
        self._task_boards: Dict[str, Dict[str, Any]] = {}
        self._budgets: Dict[str, List[BudgetEntry]] = {}

    def _require(self, session_id: str) -> None:
        if session_id not in self._sessions:
            raise StoreError(f"Unknown session: {session_id}")

    def create_session(
        self, session_id: str, mission: str, doers: List[str], budget: int
    ) -> MissionSession:
        if session_id in self._sessions:
            raise StoreError(f"Session already exists: {session_id}")
        session = MissionSession(id=session_id, mission=mission, doers=list(doers), budget=budget)
        self._sessions[session_id] = session
        self._messages[session_id] = []
        self._decisions[session_id] = []
        self._task_boards[session_id] = {"tasks": [], "transitions": []}
        self._budgets[session_id] = []
        return replace(session)

    def get_session(self, session_id: str) -> Optional[MissionSession]:
        session = self._sessions.get(session_id)
        return replace(session, doers=list(session.doers)) if session else None

    def _put_session(self, session: MissionSession) -> None:
        self._require(session.id)
        self._sessions[session.id] = replace(session, doers=list(session.doers))

    def list_sessions(self) -> List[MissionSession]:
        sessions = [replace(s, doers=list(s.doers)) for s in self._sessions.values()]
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    def append_message(self, session_id: str, message: Message) -> None:
        self._require(session_id)
        self._messages[session_id].append(message)

    def get_messages(self, session_id: str) -> List[Message]:
        return list(self._messages.get(session_id, []))

    def append_decision(self, session_id: str, record: DecisionRecord) -> None:
        self._require(session_id)
        self._decisions[session_id].append(record)

    def get_decisions(self, session_id: str) -> List[DecisionRecord]:
        return list(self._decisions.get(session_id, []))

    def save_task_board(self, session_id: str, snapshot: Dict[str, Any]) -> None:
        self._require(session_id)
        self._task_boards[session_id] = deepcopy(snapshot)

    def load_task_board(self, session_id: str) -> Optional[Dict[str, Any]]:
        snapshot = self._task_boards.get(session_id)
        return deepcopy(snapshot) if snapshot is not None else None

    def update_budget(self, session_id: str, entries: List[BudgetEntry]) -> None:
        self._require(session_id)
        self._budgets[session_id] = list(entries)

    def get_budget(self, session_id: str) -> List[BudgetEntry]:
        return list(self._budgets.get(session_id, []))


# Markdown export -------------------------------------------------------------

_ARROW = "→"
_HEADING = re.compile(rf"^### (?P<sender>\S+) {_ARROW} (?P<recipient>\S+) \((?P<type>[a-z]+)\)$")
_SEPARATOR = "---"
# Body lines that could be read as a heading get one extra leading backslash.
_NEEDS_ESCAPE = re.compile(r"^\\*### ")
_ESCAPED = re.compile(r"^\\+### ")


def _escape_body(content: str) -> str:
    return "\n".join(
        "\\" + line if _NEEDS_ESCAPE.match(line) else line for line in content.split("\n")
    )


def _unescape_body(lines: List[str]) -> List[str]:
    return [line[1:] if _ESCAPED.match(line) else line for line in lines]


def render_markdown(session: MissionSession, messages: List[Message]) -> str:
    lines = [
        f"# Arena Session: {session.id[:8]}",
        "",
        f"**Mission:** {session.mission}",
        f"**DOERs:** {', '.join(session.doers)}",
        f"**Status:** {session.status.value}",
        f"**Turns:** {session.turns_used}/{session.budget}",
        f"**Created:** {session.created_at}",
        "",
        _SEPARATOR,
        "",
        "## Transcript",
        "",
    ]
    for msg in messages:
        lines.extend(
            [
                f"### {msg.sender} {_ARROW} {msg.recipient} ({msg.type.value})",
                f"*{msg.timestamp}*",
                "",
                _escape_body(msg.content),
                "",
                _SEPARATOR,
                "",
            ]
        )
    return "\n".join(lines)


def parse_markdown_transcript(markdown: str) -> List[Tuple[str, str, MessageType, str]]:
    """Recover ordered (from, to, type, content) tuples from an exported transcript.

    A message body ends at the last ``---`` line before the next message
    heading (or the end of the document), so bodies may themselves contain
    horizontal rules.
    """
    _, marker, body = markdown.partition("\n## Transcript\n")
    if not marker:
        return []

    lines = body.split("\n")
    headings = [i for i, line in enumerate(lines) if _HEADING.match(line)]
    entries: List[Tuple[str, str, MessageType, str]] = []
    for index, start in enumerate(headings):
        end = headings[index + 1] if index + 1 < len(headings) else len(lines)
        match = _HEADING.match(lines[start])
        # heading, *timestamp*, blank, content..., blank, ---, blank
        block = lines[start + 3 : end]
        while block and block[-1] == "":
            block.pop()
        if block and block[-1] == _SEPARATOR:
            block.pop()
        if block and block[-1] == "":
            block.pop()
        entries.append(
            (
                match.group("sender"),
                match.group("recipient"),
                MessageType(match.group("type")),
                "\n".join(_unescape_body(block)),
            )
        )
    return entries
