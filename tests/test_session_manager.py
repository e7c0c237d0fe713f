"""Session manager: allocation, turn accounting and resume rules."""
from __future__ import annotations

from pathlib import Path

import pytest

from arena.core.errors import RouterStateError
from arena.core.models import AgentKind, AgentStatus, MessageType, SessionStatus
from arena.orchestration.session_manager import SessionManager, allocate_turns
from arena.storage.store import FileSessionStore, InMemorySessionStore, SessionRepository

from fakes import CountingHandles


_handles = CountingHandles()


def _manager(store: SessionRepository | None = None) -> SessionManager:
    return SessionManager(store or InMemorySessionStore(), _handles)


def test_allocation_reserves_a_fifth_for_the_director() -> None:
    assert allocate_turns(1000, 3) == (200, 266)
    assert allocate_turns(10, 4) == (2, 2)
    assert allocate_turns(1, 1) == (0, 0)


def test_start_builds_director_and_doers() -> None:
    manager = _manager()
    state = manager.start("Build a TODO app", ["backend", "qa"], 100)

    assert list(state.agents) == ["director", "doer-backend", "doer-qa"]
    assert state.agents["director"].kind is AgentKind.DIRECTOR
    assert state.agents["doer-qa"].doer_type == "qa"
    assert state.agents["doer-backend"].turns_allocated == 40
    assert len({agent.session_handle for agent in state.agents.values()}) == 3
    assert state.session.status is SessionStatus.RUNNING
    assert manager.store.get_session(state.session.id) is not None


@pytest.mark.parametrize(
    ("doers", "budget"),
    [([], 10), (["qa", "qa"], 10), (["qa"], 0)],
)
def test_start_rejects_bad_input(doers, budget) -> None:
    with pytest.raises(ValueError):
        _manager().start("Mission", doers, budget)


def test_operations_need_a_session() -> None:
    with pytest.raises(RouterStateError):
        _manager().record_turn("director", "system", MessageType.RESPONSE, "x")


def test_record_turn_persists_then_counts() -> None:
    manager = _manager()
    state = manager.start("Mission", ["backend"], 5)

    message = manager.record_turn("director", "doer-backend", MessageType.TASK, "Build")
    manager.record_turn("doer-backend", "director", MessageType.RESPONSE, "Built")

    assert manager.store.get_messages(state.session.id)[0] == message
    assert state.current_turn == 2
    assert state.agents["director"].turns_used == 1
    assert state.agents["doer-backend"].turns_used == 1
    assert manager.store.get_session(state.session.id).turns_used == 2
    assert sum(a.turns_used for a in state.agents.values()) == state.current_turn


def test_budget_is_exhausted_at_the_ceiling() -> None:
    manager = _manager()
    manager.start("Mission", ["backend"], 2)

    manager.record_turn("director", "doer-backend", MessageType.TASK, "a")
    assert not manager.is_budget_exhausted()
    manager.record_turn("doer-backend", "director", MessageType.RESPONSE, "b")
    assert manager.is_budget_exhausted()


def test_single_active_agent() -> None:
    manager = _manager()
    state = manager.start("Mission", ["backend", "qa"], 10)

    manager.set_active_agent("director")
    manager.set_active_agent("doer-qa")

    assert state.active_agent == "doer-qa"
    assert [a.id for a in state.agents.values() if a.status is AgentStatus.ACTIVE] == ["doer-qa"]

    manager.update_agent_status("doer-qa", AgentStatus.IDLE, current_task=None)
    assert state.active_agent is None


def test_complete_writes_budget_report() -> None:
    manager = _manager()
    state = manager.start("Mission", ["backend"], 10)
    manager.record_turn("director", "doer-backend", MessageType.TASK, "a")

    manager.complete()

    assert state.session.status is SessionStatus.COMPLETED
    report = {e.agent_id: e.turns_used for e in manager.store.get_budget(state.session.id)}
    assert report == {"director": 1, "doer-backend": 0}


def test_resume_rebuilds_counts_from_transcript() -> None:
    store = InMemorySessionStore()
    first = _manager(store)
    state = first.start("Mission", ["backend"], 10)
    first.record_turn("director", "doer-backend", MessageType.TASK, "a")
    first.record_turn("doer-backend", "director", MessageType.RESPONSE, "b")
    first.record_turn("director", "doer-backend", MessageType.TASK, "c")
    task = first.task_board.create_task("API", "Build the API")
    first.save_task_board()
    first.pause()

    second = SessionManager(store, CountingHandles("resumed"))
    resumed = second.resume(state.session.id)

    assert resumed is not None
    assert resumed.session.status is SessionStatus.RUNNING
    assert resumed.current_turn == 3
    assert resumed.agents["director"].turns_used == 2
    assert resumed.agents["doer-backend"].turns_used == 1
    assert all(a.session_handle.startswith("resumed-") for a in resumed.agents.values())
    assert second.task_board.get_task(task.id) is not None


def test_phase_survives_a_resume(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path)
    first = _manager(store)
    state = first.start("Mission", ["backend"], 10)
    assert state.phase == "active"

    first.set_phase("testing")
    first.pause()

    resumed = SessionManager(FileSessionStore(tmp_path), CountingHandles("again")).resume(state.session.id)

    assert resumed is not None
    assert resumed.phase == "testing"
    assert store.get_session(state.session.id).to_dict()["phase"] == "testing"


@pytest.mark.parametrize("status", [SessionStatus.COMPLETED, SessionStatus.FAILED])
def test_terminal_sessions_do_not_resume(status: SessionStatus) -> None:
    store = InMemorySessionStore()
    manager = _manager(store)
    state = manager.start("Mission", ["backend"], 10)
    manager.complete(status)

    assert _manager(store).resume(state.session.id) is None


def test_missing_session_does_not_resume() -> None:
    assert _manager().resume("nope") is None


def test_list_sessions_filters_by_status() -> None:
    store = InMemorySessionStore()
    running = _manager(store).start("One", ["qa"], 10)
    paused_manager = _manager(store)
    paused = paused_manager.start("Two", ["qa"], 10)
    paused_manager.pause()

    manager = _manager(store)
    assert [s.id for s in manager.list_sessions(status="paused")] == [paused.session.id]
    assert [s.id for s in manager.list_sessions(status=SessionStatus.RUNNING)] == [running.session.id]
    assert len(manager.list_sessions(limit=1)) == 1


def test_export_defaults_to_current_session() -> None:
    manager = _manager()
    state = manager.start("Ship it", ["backend"], 10)
    manager.record_turn("director", "doer-backend", MessageType.TASK, "Build")

    assert f"# Arena Session: {state.session.id[:8]}" in manager.export()
