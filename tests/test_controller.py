"""Background execution, stop and resume through the arena controller."""
from __future__ import annotations

import asyncio

import pytest

from arena.core.errors import RouterStateError, StoreError
from arena.core.event_bus import ArenaEventBus, EventKind
from arena.core.models import SessionStatus
from arena.orchestration.controller import RESUME_PROMPT, ArenaController
from arena.services.consult import CONSULT_IDENTITY, ModelConsultant
from arena.services.llm_pool import LLMPool
from arena.storage.store import InMemorySessionStore

from fakes import ScriptedAdapter


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class GatedAdapter(ScriptedAdapter):
    """Holds every reply until the test opens the gate."""

    def __init__(self, replies=None) -> None:
        super().__init__(replies)
        self.gate = asyncio.Event()

    async def send(self, identity, handle, is_first_turn, message):
        await self.gate.wait()
        return await super().send(identity, handle, is_first_turn, message)


def _controller(adapter: ScriptedAdapter) -> ArenaController:
    return ArenaController(store=InMemorySessionStore(), events=ArenaEventBus(), adapter=adapter)


@pytest.mark.anyio
async def test_start_runs_mission_in_background() -> None:
    adapter = ScriptedAdapter(
        {
            "director": ["[TASK] DOER-QA: write tests", "[COMPLETE] tested"],
            "doer-qa": ["Tests written."],
        }
    )
    controller = _controller(adapter)

    state = await controller.start("Test the app", ["qa"], 10)
    await controller.wait()

    assert state.session.status is SessionStatus.COMPLETED
    assert controller.status()["turnsUsed"] == 3
    assert not controller.is_running
    assert controller.task_board(state.session.id)["tasks"][0]["status"] == "completed"


@pytest.mark.anyio
async def test_unknown_doer_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        await _controller(ScriptedAdapter()).start("Mission", ["wizard"], 10)


@pytest.mark.anyio
async def test_input_while_busy_is_rejected() -> None:
    adapter = GatedAdapter({"director": ["Thinking.", "[COMPLETE] done"]})
    controller = _controller(adapter)
    await controller.start("Mission", ["qa"], 10)
    await asyncio.sleep(0)

    with pytest.raises(RouterStateError):
        await controller.post("hurry up")

    adapter.gate.set()
    await controller.wait()
    await controller.post("carry on")
    await controller.wait()
    assert controller.router.is_finished


@pytest.mark.anyio
async def test_stop_pauses_and_resume_continues() -> None:
    adapter = ScriptedAdapter({"director": ["Thinking.", "[COMPLETE] resumed and done"]})
    events = ArenaEventBus()
    store = InMemorySessionStore()
    controller = ArenaController(store=store, events=events, adapter=adapter)

    state = await controller.start("Mission", ["qa"], 10)
    await controller.wait()
    stopped = await controller.stop()

    assert stopped.status is SessionStatus.PAUSED
    assert controller.status() == {"active": False}

    resumed = await controller.resume(state.session.id)
    await controller.wait()

    assert resumed is not None
    assert RESUME_PROMPT in adapter.calls_for("director")[1][3]
    assert adapter.calls_for("director")[1][2] is True
    assert store.get_session(state.session.id).status is SessionStatus.COMPLETED
    statuses = [e.data["status"] for e in events.history(EventKind.SESSION)]
    assert statuses == ["running", "paused", "running"]


@pytest.mark.anyio
async def test_completed_session_cannot_resume() -> None:
    controller = _controller(ScriptedAdapter({"director": ["[COMPLETE] done"]}))
    state = await controller.start("Mission", ["qa"], 10)
    await controller.wait()

    assert await controller.resume(state.session.id) is None


@pytest.mark.anyio
async def test_retry_replays_failed_step() -> None:
    adapter = ScriptedAdapter()
    controller = _controller(adapter)
    await controller.start("Mission", ["qa"], 10)
    await controller.wait()

    assert controller.status()["failedStep"] == "director"

    adapter.script("director", "[COMPLETE] done")
    assert await controller.retry()
    await controller.wait()
    assert controller.router.is_finished


@pytest.mark.anyio
async def test_post_without_session_is_rejected() -> None:
    with pytest.raises(RouterStateError):
        await _controller(ScriptedAdapter()).post("hello")


@pytest.mark.anyio
async def test_invalid_sender_is_rejected_before_launch() -> None:
    adapter = ScriptedAdapter({"director": ["Thinking."]})
    controller = _controller(adapter)
    await controller.start("Mission", ["qa"], 10)
    await controller.wait()

    with pytest.raises(ValueError):
        await controller.post("hello", sender="the operator")

    assert not controller.is_running
    assert controller.status()["status"] == "running"


class BrokenAdapter(ScriptedAdapter):
    async def send(self, identity, handle, is_first_turn, message):
        raise RuntimeError("adapter exploded")


class ReadOnlyStore(InMemorySessionStore):
    """Accepts writes until ``read_only`` is set, then every session update fails."""

    read_only = False

    def update_session(self, session_id, **changes):
        if self.read_only:
            raise StoreError("read-only file system")
        return super().update_session(session_id, **changes)


@pytest.mark.anyio
async def test_unexpected_failure_survives_a_store_that_cannot_record_it() -> None:
    store = ReadOnlyStore()
    events = ArenaEventBus()
    controller = ArenaController(store=store, events=events, adapter=BrokenAdapter())

    state = await controller.start("Mission", ["qa"], 10)
    store.read_only = True
    await controller.wait()

    assert not controller.is_running
    errors = events.history(EventKind.ERROR)
    assert [e.data["step"] for e in errors] == ["loop"]
    assert errors[0].data["error"] == "adapter exploded"
    assert store.get_session(state.session.id).status is SessionStatus.RUNNING


@pytest.mark.anyio
async def test_consult_runs_think_or_debate() -> None:
    adapter = ScriptedAdapter({CONSULT_IDENTITY: ["Sessions.", "Round one.", "Round two."]})
    controller = ArenaController(
        store=InMemorySessionStore(),
        events=ArenaEventBus(),
        adapter=adapter,
        consultant=ModelConsultant(LLMPool(), adapter),
    )

    thought = await controller.consult("JWT or sessions?")
    debated = await controller.consult("Monolith?", rounds=2)

    assert thought.synthesis == "Sessions."
    assert [r.responses[0].response for r in debated.rounds] == ["Round one.", "Round two."]
