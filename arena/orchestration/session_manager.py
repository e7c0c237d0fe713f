"""Run-time state of one mission and its bridge to the session store."""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from arena.agents.adapter import generate_session_handle
from arena.core.errors import RouterStateError
from arena.core.models import (
    DIRECTOR_ID,
    AgentKind,
    AgentRunState,
    AgentStatus,
    BudgetEntry,
    DecisionRecord,
    Message,
    MessageType,
    MissionSession,
    SessionState,
    SessionStatus,
    doer_id_for,
)
from arena.core.task_board import TaskBoard
from arena.storage.store import SessionRepository

logger = logging.getLogger(__name__)

DIRECTOR_SHARE = 0.2

_UNSET = object()


def allocate_turns(budget: int, doer_count: int) -> tuple[int, int]:
    """Return (director allocation, per-doer allocation) for a budget."""
    director = int(budget * DIRECTOR_SHARE)
    per_doer = int((budget * (1 - DIRECTOR_SHARE)) / doer_count) if doer_count else 0
    return director, per_doer


class SessionManager:
    """Own per-agent status and turn counters for a single mission.

    All mutations happen on the router's control task; nothing here is
    locked. Every recorded turn is persisted before counters move.
    """

    def __init__(
        self,
        store: SessionRepository,
        handle_factory: Callable[[], str] = generate_session_handle,
    ) -> None:
        self.store = store
        self._new_handle = handle_factory
        self._state: Optional[SessionState] = None
        self.task_board = TaskBoard()

    @property
    def state(self) -> Optional[SessionState]:
        return self._state

    def require_state(self) -> SessionState:
        if self._state is None:
            raise RouterStateError("No active session")
        return self._state

    def _build_agents(
        self, session: MissionSession, messages: Optional[List[Message]] = None
    ) -> Dict[str, AgentRunState]:
        director_turns, doer_turns = allocate_turns(session.budget, len(session.doers))
        authored: Dict[str, int] = {}
        for message in messages or []:
            authored[message.sender] = authored.get(message.sender, 0) + 1

        agents: Dict[str, AgentRunState] = {
            DIRECTOR_ID: AgentRunState(
                id=DIRECTOR_ID,
                kind=AgentKind.DIRECTOR,
                session_handle=self._new_handle(),
                turns_allocated=director_turns,
                turns_used=authored.get(DIRECTOR_ID, 0),
            )
        }
        for doer_type in session.doers:
            doer_id = doer_id_for(doer_type)
            agents[doer_id] = AgentRunState(
                id=doer_id,
                kind=AgentKind.DOER,
                doer_type=doer_type,
                session_handle=self._new_handle(),
                turns_allocated=doer_turns,
                turns_used=authored.get(doer_id, 0),
            )
        return agents

    def start(self, mission: str, doer_types: List[str], budget: int = 1000) -> SessionState:
        """Create and persist a new running mission."""
        if budget < 1:
            raise ValueError("budget must be at least 1 turn")
        if not doer_types:
            raise ValueError("at least one DOER type is required")
        if len(set(doer_types)) != len(doer_types):
            raise ValueError("DOER types must be unique")

        session = self.store.create_session(self._new_handle(), mission, doer_types, budget)
        self.task_board = TaskBoard()
        self._state = SessionState(session=session, agents=self._build_agents(session))
        logger.info(
            "Started session %s with %d DOERs and a budget of %d turns",
            session.id,
            len(doer_types),
            budget,
        )
        return self._state

    def resume(self, session_id: str) -> Optional[SessionState]:
        """Reload a paused or running mission; ``None`` if missing or terminal.

        Every agent gets a fresh conversation handle; turn counts are rebuilt
        from the transcript.
        """
        session = self.store.get_session(session_id)
        if session is None or session.status.is_terminal:
            return None

        messages = self.store.get_messages(session_id)
        agents = self._build_agents(session, messages)
        session = self.store.update_session(session_id, status=SessionStatus.RUNNING) or session

        snapshot = self.store.load_task_board(session_id)
        self.task_board = TaskBoard.from_dict(snapshot) if snapshot else TaskBoard()
        self._state = SessionState(
            session=session,
            agents=agents,
            current_turn=sum(agent.turns_used for agent in agents.values()),
        )
        logger.info("Resumed session %s at turn %d", session_id, self._state.current_turn)
        return self._state

    def get_agent(self, agent_id: str) -> Optional[AgentRunState]:
        state = self.require_state()
        return state.agents.get(agent_id)

    def set_active_agent(self, agent_id: str) -> None:
        """Make ``agent_id`` the single active agent."""
        state = self.require_state()
        if state.active_agent and state.active_agent != agent_id:
            previous = state.agents.get(state.active_agent)
            if previous is not None and previous.status is AgentStatus.ACTIVE:
                previous.status = AgentStatus.IDLE
        agent = state.agents.get(agent_id)
        if agent is not None:
            agent.status = AgentStatus.ACTIVE
            state.active_agent = agent_id

    def update_agent_status(
        self, agent_id: str, status: AgentStatus, current_task: object = _UNSET
    ) -> None:
        state = self.require_state()
        agent = state.agents.get(agent_id)
        if agent is None:
            return
        agent.status = status
        if current_task is not _UNSET:
            agent.current_task = current_task  # type: ignore[assignment]
        if status is not AgentStatus.ACTIVE and state.active_agent == agent_id:
            state.active_agent = None

    def record_turn(
        self, sender: str, recipient: str, message_type: MessageType, content: str
    ) -> Message:
        """Persist one exchange and advance the shared and per-agent counters."""
        state = self.require_state()
        message = Message(sender=sender, recipient=recipient, type=message_type, content=content)
        self.store.append_message(state.session.id, message)

        state.current_turn += 1
        agent = state.agents.get(sender)
        if agent is not None:
            agent.turns_used += 1

        updated = self.store.update_session(state.session.id, turns_used=state.current_turn)
        if updated is not None:
            state.session = updated
        return message

    def record_decision(self, issue: str, ruling: str, context: str) -> DecisionRecord:
        state = self.require_state()
        record = DecisionRecord(issue=issue, ruling=ruling, context=context)
        self.store.append_decision(state.session.id, record)
        return record

    def set_phase(self, phase: str) -> None:
        """Persist the mission phase so a resumed session continues in it."""
        state = self.require_state()
        updated = self.store.update_session(state.session.id, phase=phase)
        if updated is not None:
            state.session = updated
        logger.info("Session %s entered phase %s", state.session.id, phase)

    def save_task_board(self) -> None:
        state = self.require_state()
        self.store.save_task_board(state.session.id, self.task_board.to_dict())

    def is_budget_exhausted(self) -> bool:
        if self._state is None:
            return True
        return self._state.current_turn >= self._state.session.budget

    def budget_entries(self) -> List[BudgetEntry]:
        state = self.require_state()
        return [
            BudgetEntry(agent_id=agent_id, turns_used=agent.turns_used, turns_allocated=agent.turns_allocated)
            for agent_id, agent in state.agents.items()
        ]

    def complete(self, status: SessionStatus = SessionStatus.COMPLETED) -> None:
        """Write the budget report and move the session to ``status``."""
        state = self.require_state()
        self.store.update_budget(state.session.id, self.budget_entries())
        updated = self.store.update_session(state.session.id, status=status)
        if updated is not None:
            state.session = updated
        logger.info("Session %s is now %s", state.session.id, status.value)

    def pause(self) -> None:
        self.complete(SessionStatus.PAUSED)

    def fail(self) -> None:
        self.complete(SessionStatus.FAILED)

    def export(self, session_id: Optional[str] = None) -> str:
        """Markdown transcript of ``session_id`` (default: the current session)."""
        if session_id is None:
            session_id = self.require_state().session.id
        return self.store.export_markdown(session_id)

    def list_sessions(
        self, status: Optional[SessionStatus | str] = None, limit: Optional[int] = None
    ) -> List[MissionSession]:
        sessions = self.store.list_sessions()
        if status is not None:
            wanted = SessionStatus(status)
            sessions = [s for s in sessions if s.status is wanted]
        if limit is not None:
            sessions = sessions[:limit]
        return sessions
