"""Controller owning the active mission for the HTTP service."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from arena.agents.adapter import AgentAdapter, generate_session_handle
from arena.agents.director import DecisionClassifier
from arena.agents.doer import AVAILABLE_DOER_TYPES
from arena.core.errors import RouterStateError, StoreError
from arena.core.event_bus import ArenaEventBus, EventKind
from arena.core.models import SYSTEM_ID, MissionSession, SessionState, SessionStatus
from arena.orchestration.router import OPERATOR_ID, Router, validate_sender
from arena.orchestration.session_manager import SessionManager
from arena.services.consult import DebateResult, ModelConsultant, ThinkResult
from arena.storage.store import SessionRepository

logger = logging.getLogger(__name__)

RESUME_PROMPT = (
    "Session resumed. Continue from where we left off. "
    "Review the current state and assign the next task."
)


def validate_doer_types(doer_types: List[str]) -> None:
    invalid = [t for t in doer_types if t not in AVAILABLE_DOER_TYPES]
    if invalid:
        raise ValueError(
            f"Invalid DOER types: {', '.join(invalid)}. "
            f"Available: {', '.join(AVAILABLE_DOER_TYPES)}"
        )


class ArenaController:
    """Run at most one mission at a time as a background task."""

    def __init__(
        self,
        *,
        store: SessionRepository,
        events: ArenaEventBus,
        adapter: AgentAdapter,
        classifier: Optional[DecisionClassifier] = None,
        consultant: Optional[ModelConsultant] = None,
        handle_factory: Callable[[], str] = generate_session_handle,
    ) -> None:
        self._store = store
        self._events = events
        self._adapter = adapter
        self._classifier = classifier
        self._consultant = consultant
        self._handle_factory = handle_factory
        self._lock = asyncio.Lock()
        self._manager: Optional[SessionManager] = None
        self._router: Optional[Router] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def manager(self) -> Optional[SessionManager]:
        return self._manager

    @property
    def router(self) -> Optional[Router]:
        return self._router

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, mission: str, doer_types: List[str], budget: int) -> SessionState:
        """Create a session and launch its control loop."""
        validate_doer_types(doer_types)
        async with self._lock:
            await self._halt_current()
            manager = SessionManager(self._store, self._handle_factory)
            state = manager.start(mission, doer_types, budget)
            router = self._attach(manager)
            self._publish_session(state.session)
            self._launch(router.start)
        return state

    async def resume(self, session_id: str) -> Optional[SessionState]:
        """Reload a paused or running session and prompt the DIRECTOR to continue."""
        async with self._lock:
            await self._halt_current()
            manager = SessionManager(self._store, self._handle_factory)
            state = manager.resume(session_id)
            if state is None:
                return None
            router = self._attach(manager)
            self._publish_session(state.session)
            self._launch(lambda: router.post(RESUME_PROMPT, sender=SYSTEM_ID))
        return state

    async def stop(self) -> Optional[MissionSession]:
        """Stop the active run after its in-flight step; the session is paused."""
        async with self._lock:
            if self._manager is None:
                return None
            session = await self._halt_current()
            self._manager = None
            self._router = None
            return session

    async def retry(self) -> bool:
        """Replay the step that last failed at the adapter."""
        router = self._require_idle_router()
        if router.failed_step is None:
            return False
        self._launch(router.retry)
        return True

    async def post(self, content: str, sender: str = OPERATOR_ID) -> None:
        """Send external input to the DIRECTOR of the active run."""
        validate_sender(sender)
        router = self._require_idle_router()
        self._launch(lambda: router.post(content, sender=sender))

    async def consult(self, question: str, rounds: int = 0) -> Union[ThinkResult, DebateResult]:
        """Put a strategic question to the pooled models; ``rounds`` > 0 runs a debate."""
        if self._consultant is None:
            raise RouterStateError("Model consultation is not configured")
        if rounds:
            return await self._consultant.debate(question, rounds)
        return await self._consultant.think(question)

    async def wait(self) -> None:
        """Wait for the current background run (if any) to pause or finish."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def shutdown(self) -> None:
        await self.stop()

    def status(self) -> Dict[str, Any]:
        if self._manager is None or self._manager.state is None:
            return {"active": False}
        state = self._manager.state
        router = self._router
        return {
            "active": True,
            "running": self.is_running,
            "sessionId": state.session.id,
            "status": state.session.status.value,
            "turnsUsed": state.current_turn,
            "budget": state.session.budget,
            "phase": state.phase,
            "activeAgent": state.active_agent,
            "failedStep": router.failed_step.kind if router and router.failed_step else None,
            "agents": [
                {
                    "id": agent.id,
                    "status": agent.status.value,
                    "turnsUsed": agent.turns_used,
                    "turnsAllocated": agent.turns_allocated,
                    "currentTask": agent.current_task,
                }
                for agent in state.agents.values()
            ],
        }

    def list_sessions(
        self, status: Optional[SessionStatus | str] = None, limit: Optional[int] = None
    ) -> List[MissionSession]:
        return SessionManager(self._store).list_sessions(status=status, limit=limit)

    def get_session(self, session_id: str) -> Optional[MissionSession]:
        return self._store.get_session(session_id)

    def export(self, session_id: str) -> str:
        return self._store.export_markdown(session_id)

    def task_board(self, session_id: str) -> Dict[str, Any]:
        """Live board for the active session, stored snapshot otherwise."""
        manager = self._manager
        if manager is not None and manager.state is not None and manager.state.session.id == session_id:
            return manager.task_board.to_dict()
        self._store.require_session(session_id)
        return self._store.load_task_board(session_id) or {"tasks": [], "transitions": []}

    # Internals ---------------------------------------------------------------

    def _attach(self, manager: SessionManager) -> Router:
        router = Router(
            manager, self._adapter, self._events, self._classifier, consultant=self._consultant
        )
        router.initialize()
        self._manager = manager
        self._router = router
        return router

    def _require_idle_router(self) -> Router:
        if self._router is None:
            raise RouterStateError("No active session")
        if self.is_running:
            raise RouterStateError("The arena is busy with a step")
        return self._router

    def _launch(self, step: Callable[[], Awaitable[None]]) -> None:
        self._task = asyncio.create_task(self._drive(step))

    async def _drive(self, step: Callable[[], Awaitable[None]]) -> None:
        manager = self._manager
        try:
            await step()
        except StoreError:
            # The router already reported the failure and failed the session.
            logger.error("Run aborted after a persistence failure")
        except RouterStateError as exc:
            logger.warning("Run rejected: %s", exc)
        except Exception as exc:
            logger.exception("Unexpected failure in the control loop")
            if manager is not None and manager.state is not None:
                self._events.publish(
                    EventKind.ERROR,
                    {
                        "sessionId": manager.state.session.id,
                        "agentId": manager.state.active_agent,
                        "step": "loop",
                        "error": str(exc),
                    },
                )
                try:
                    manager.fail()
                except StoreError as nested:
                    logger.error("Could not mark session %s failed: %s", manager.state.session.id, nested)

    async def _halt_current(self) -> Optional[MissionSession]:
        """Stop the current router cooperatively and pause a session that has not ended."""
        manager, router = self._manager, self._router
        if manager is None or router is None:
            return None
        router.stop()
        if self._task is not None:
            try:
                await asyncio.shield(self._task)
            finally:
                self._task = None
        state = manager.state
        if state is None:
            return None
        if not state.session.status.is_terminal:
            manager.pause()
            self._publish_session(state.session)
        return state.session

    def _publish_session(self, session: MissionSession) -> None:
        self._events.publish(EventKind.SESSION, session.to_dict())
