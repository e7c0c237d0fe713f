"""Session store behaviour for the file and in-memory backends."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from arena.core.errors import StoreError
from arena.core.models import (
    BudgetEntry,
    DecisionRecord,
    Message,
    MessageType,
    SessionStatus,
)
from arena.storage.store import (
    BUDGET_REPORT_FILE,
    DECISION_LOG_FILE,
    SESSION_FILE,
    TASK_BOARD_FILE,
    TRANSCRIPT_FILE,
    FileSessionStore,
    InMemorySessionStore,
    parse_markdown_transcript,
    render_markdown,
)


@pytest.fixture(params=["file", "memory"])
def store(request, tmp_path: Path):
    if request.param == "file":
        return FileSessionStore(tmp_path / "sessions")
    return InMemorySessionStore()


def test_create_session_writes_all_artifacts(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path)
    session = store.create_session("abc123", "Build a TODO app", ["backend", "qa"], 50)

    directory = tmp_path / "abc123"
    for name in (SESSION_FILE, TRANSCRIPT_FILE, DECISION_LOG_FILE, TASK_BOARD_FILE, BUDGET_REPORT_FILE):
        assert (directory / name).exists()
    on_disk = json.loads((directory / SESSION_FILE).read_text())
    assert on_disk["turnsUsed"] == 0
    assert on_disk["status"] == "running"
    assert session.doers == ["backend", "qa"]
    assert not list(directory.glob(".*"))


def test_duplicate_session_is_rejected(store) -> None:
    store.create_session("dup", "Mission", ["docs"], 10)
    with pytest.raises(StoreError):
        store.create_session("dup", "Mission", ["docs"], 10)


def test_invalid_session_id_is_rejected(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path)
    with pytest.raises(ValueError):
        store.create_session("../escape", "Mission", ["docs"], 10)


def test_get_missing_session_returns_none(store) -> None:
    assert store.get_session("nope") is None
    assert store.export_markdown("nope") == ""


def test_transcript_is_append_only_and_ordered(store) -> None:
    store.create_session("s1", "Mission", ["backend"], 10)
    first = Message("director", "doer-backend", MessageType.TASK, "Build it")
    second = Message("doer-backend", "director", MessageType.RESPONSE, "Built")
    store.append_message("s1", first)
    store.append_message("s1", second)

    assert store.get_messages("s1") == [first, second]


def test_append_to_unknown_session_fails(store) -> None:
    with pytest.raises(StoreError):
        store.append_message("ghost", Message("director", "system", MessageType.RESPONSE, "x"))


def test_update_session_bumps_updated_at(store) -> None:
    created = store.create_session("s2", "Mission", ["qa"], 10)
    updated = store.update_session("s2", turns_used=3, status="paused")

    assert updated.turns_used == 3
    assert updated.status is SessionStatus.PAUSED
    assert updated.updated_at >= created.updated_at
    assert store.get_session("s2").status is SessionStatus.PAUSED
    assert store.update_session("missing", turns_used=1) is None


def test_update_session_rejects_unknown_fields(store) -> None:
    store.create_session("s3", "Mission", ["qa"], 10)
    with pytest.raises(ValueError):
        store.update_session("s3", id="other")


def test_decisions_task_board_and_budget(store) -> None:
    store.create_session("s4", "Mission", ["backend"], 10)
    record = DecisionRecord(issue="task-assignment -> doer-backend", ruling="Build", context="start")
    store.append_decision("s4", record)
    store.save_task_board("s4", {"tasks": [{"id": "t1"}], "transitions": []})
    store.update_budget("s4", [BudgetEntry("director", 1, 2)])

    assert store.get_decisions("s4") == [record]
    assert store.load_task_board("s4")["tasks"] == [{"id": "t1"}]
    assert store.get_budget("s4") == [BudgetEntry("director", 1, 2)]


def test_list_sessions_newest_first(store) -> None:
    store.create_session("old", "Mission", ["qa"], 10)
    store.create_session("new", "Mission", ["qa"], 10)
    store.update_session("old", turns_used=1)

    assert [s.id for s in store.list_sessions()][0] == "old"


def test_corrupt_transcript_line_raises(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path)
    store.create_session("bad", "Mission", ["qa"], 10)
    (tmp_path / "bad" / TRANSCRIPT_FILE).write_text("{not json}\n")

    with pytest.raises(StoreError):
        store.get_messages("bad")


def test_markdown_export_matches_layout(store) -> None:
    store.create_session("abcdef123456", "Ship it", ["backend"], 10)
    store.append_message(
        "abcdef123456",
        Message("director", "doer-backend", MessageType.TASK, "Build", timestamp="2024-01-01T00:00:00Z"),
    )

    markdown = store.export_markdown("abcdef123456")

    assert markdown.startswith("# Arena Session: abcdef12\n")
    assert "**Mission:** Ship it" in markdown
    assert "**Turns:** 0/10" in markdown
    assert "### director → doer-backend (task)\n*2024-01-01T00:00:00Z*\n\nBuild\n\n---" in markdown


def test_markdown_transcript_parses_back() -> None:
    store = InMemorySessionStore()
    session = store.create_session("s5", "Mission", ["backend"], 10)
    messages = [
        Message("director", "doer-backend", MessageType.TASK, "Step one\n\n---\n\nstill the task"),
        Message("doer-backend", "director", MessageType.QUESTION, "[CLARIFICATION NEEDED] which DB?"),
        Message("director", "doer-backend", MessageType.TASK, "Postgres"),
    ]

    parsed = parse_markdown_transcript(render_markdown(session, messages))

    assert parsed == [(m.sender, m.recipient, m.type, m.content) for m in messages]


def test_parse_without_transcript_section() -> None:
    assert parse_markdown_transcript("# nothing here") == []


def test_heading_shaped_lines_in_a_body_stay_in_that_body() -> None:
    store = InMemorySessionStore()
    session = store.create_session("s6", "Mission", ["qa"], 10)
    messages = [
        Message(
            "doer-qa",
            "director",
            MessageType.RESPONSE,
            "Quoting the log:\n### doer-qa → director (response)\nsaw it\n\\### already escaped",
        ),
        Message("director", "doer-qa", MessageType.TASK, "### Plan\nkeep going"),
    ]

    markdown = render_markdown(session, messages)
    parsed = parse_markdown_transcript(markdown)

    assert "\n\\### doer-qa → director (response)\n" in markdown
    assert parsed == [(m.sender, m.recipient, m.type, m.content) for m in messages]


def test_every_recorded_participant_survives_the_round_trip() -> None:
    store = InMemorySessionStore()
    session = store.create_session("s7", "Mission", ["backend"], 10)
    messages = [
        Message("director", "operator", MessageType.RESPONSE, "ok"),
        Message("director", "system", MessageType.DECISION, "[DECISION] go"),
        Message("director", "doer-backend", MessageType.TASK, "go"),
    ]

    parsed = parse_markdown_transcript(render_markdown(session, messages))

    assert [(sender, recipient) for sender, recipient, _, _ in parsed] == [
        ("director", "operator"),
        ("director", "system"),
        ("director", "doer-backend"),
    ]
