"""DIRECTOR-routed control loop driving one mission."""
from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Union

from arena.agents.adapter import AgentAdapter
from arena.agents.director import DecisionClassifier, Director, DirectorContext
from arena.agents.doer import Doer, DoerContext, is_challenge, is_clarification_request
from arena.core.errors import RouterStateError, StoreError
from arena.core.event_bus import ArenaEventBus, EventKind
from arena.core.models import (
    DIRECTOR_ID,
    DOER_PREFIX,
    ID_PATTERN,
    SYSTEM_ID,
    AgentKind,
    AgentStatus,
    Decision,
    DecisionType,
    Message,
    MessageType,
    TaskStatus,
)
from arena.orchestration.session_manager import SessionManager
from arena.services.consult import ModelConsultant

logger = logging.getLogger(__name__)

BUDGET_EXHAUSTED = "budget exhausted"
OPERATOR_ID = "operator"

RECENT_MESSAGES_FOR_DIRECTOR = 10
RELATED_WORK_FOR_DOER = 3
PREVIEW_CHARS = 100

_VALID_SENDER = re.compile(ID_PATTERN)


def validate_sender(sender: str) -> None:
    if not _VALID_SENDER.match(sender):
        raise ValueError(f"Invalid sender id: {sender!r}")


@dataclass(frozen=True)
class DirectorStep:
    """Ask the DIRECTOR for its next move; ``origin`` is who it answers."""

    prompt: str
    origin: str = SYSTEM_ID

    kind = "director"


@dataclass(frozen=True)
class DoerStep:
    """Hand an instruction to one DOER, optionally tied to a task-board entry."""

    doer_id: str
    instruction: str
    task_id: Optional[str] = None

    kind = "doer"


Step = Union[DirectorStep, DoerStep]


def _task_title(instruction: str, limit: int = 80) -> str:
    for line in instruction.splitlines():
        line = line.strip().lstrip("#").strip()
        if line:
            return line if len(line) <= limit else line[: limit - 3] + "..."
    return "Untitled task"


class Router:
    """Pass the single turn hand-to-hand between the DIRECTOR and the DOERs.

    Work is an explicit queue of steps processed one at a time. A step that
    fails at the adapter is parked as ``failed_step`` and the loop pauses
    until ``retry()``; budget exhaustion and DIRECTOR completion end the
    mission.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        adapter: AgentAdapter,
        events: ArenaEventBus,
        classifier: Optional[DecisionClassifier] = None,
        *,
        consultant: Optional[ModelConsultant] = None,
    ) -> None:
        self._sessions = session_manager
        self._adapter = adapter
        self._events = events
        self._classifier = classifier
        self._consultant = consultant
        self.director: Optional[Director] = None
        self.doers: Dict[str, Doer] = {}
        self._queue: Deque[Step] = deque()
        self._log: List[Message] = []
        self._failed_step: Optional[Step] = None
        self._started = False
        self._stopped = False
        self._finished = False
        self._looping = False
        self.completion_reason: Optional[str] = None

    # Setup -------------------------------------------------------------------

    def initialize(self) -> None:
        """Create the DIRECTOR and DOERs for the manager's current session."""
        state = self._sessions.require_state()
        self.doers = {}
        for agent_id, agent in state.agents.items():
            if agent.kind is AgentKind.DIRECTOR:
                self.director = Director(
                    agent.session_handle,
                    state.session.mission,
                    self._adapter,
                    self._classifier,
                    consultant=self._consultant,
                )
            elif agent.doer_type:
                self.doers[agent_id] = Doer(agent.doer_type, agent.session_handle, self._adapter)
        if self.director is None:
            raise RouterStateError("Session has no DIRECTOR")
        # A resumed mission keeps its transcript as context.
        self._log = self._sessions.store.get_messages(state.session.id)

    def initial_prompt(self) -> str:
        session = self._sessions.require_state().session
        return (
            "A new mission has started.\n\n"
            f"Mission: {session.mission}\n\n"
            f"You have {len(session.doers)} DOERs available: {', '.join(session.doers)}\n\n"
            f"Budget: {session.budget} turns\n\n"
            "Please analyze the mission and assign the first task to begin work.\n"
            "Format your response with:\n"
            "1. Brief mission analysis\n"
            "2. Initial task assignment to a DOER\n"
            "3. Clear instructions for that DOER"
        )

    # Control surface ---------------------------------------------------------

    async def start(self) -> None:
        """Frame the mission for the DIRECTOR and run until the loop pauses."""
        if self.director is None:
            raise RouterStateError("Director not initialized")
        if self._started:
            raise RouterStateError("Router already started")
        self._started = True
        self._queue.append(DirectorStep(self.initial_prompt()))
        await self.run()

    def stop(self) -> None:
        """Cooperative stop: the loop exits before its next step."""
        self._stopped = True

    async def post(self, content: str, sender: str = OPERATOR_ID) -> None:
        """Deliver external input (operator answer, doer payload) to the DIRECTOR."""
        validate_sender(sender)
        self._ensure_accepting()
        self._queue.append(DirectorStep(content, origin=sender))
        if not self._looping:
            await self.run()

    async def retry(self) -> bool:
        """Replay the step that failed at the adapter; ``False`` if none is parked."""
        self._ensure_accepting()
        if self._failed_step is None:
            return False
        self._queue.appendleft(self._failed_step)
        self._failed_step = None
        if not self._looping:
            await self.run()
        return True

    async def handle_challenge(self, doer_id: str, challenge: str) -> None:
        doer = self.doers.get(doer_id)
        if doer is None:
            return
        await self.post(doer.build_challenge("DIRECTOR decision", challenge), sender=doer_id)

    async def handle_clarification_request(self, doer_id: str, question: str, context: str) -> None:
        doer = self.doers.get(doer_id)
        if doer is None:
            return
        await self.post(doer.build_clarification_request(question, context), sender=doer_id)

    def _ensure_accepting(self) -> None:
        if self.director is None:
            raise RouterStateError("Director not initialized")
        if self._stopped or self._finished:
            raise RouterStateError("Router is no longer running")
        self._started = True

    # Introspection -----------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._started and not self._stopped and not self._finished

    @property
    def is_finished(self) -> bool:
        return self._finished

    @property
    def failed_step(self) -> Optional[Step]:
        return self._failed_step

    @property
    def pending_steps(self) -> List[Step]:
        return list(self._queue)

    def get_message_history(self) -> List[Message]:
        return list(self._log)

    # Loop --------------------------------------------------------------------

    async def run(self) -> None:
        """Process queued steps until the queue drains, a step fails, or the mission ends."""
        self._looping = True
        try:
            while self._queue and not self._stopped and not self._finished:
                step = self._queue.popleft()
                try:
                    if isinstance(step, DirectorStep):
                        ok = await self._run_director_step(step)
                    else:
                        ok = await self._run_doer_step(step)
                except StoreError as exc:
                    self._abort(step, exc)
                    raise
                if not ok:
                    self._failed_step = step
                    return
            if not self._queue and self.is_active:
                logger.info("Waiting for further input to the DIRECTOR")
        finally:
            self._looping = False

    async def _run_director_step(self, step: DirectorStep) -> bool:
        state = self._sessions.require_state()
        self._set_status(DIRECTOR_ID, AgentStatus.ACTIVE)

        context = DirectorContext(
            mission=state.session.mission,
            current_phase=state.phase,
            doers={doer_id: doer.definition for doer_id, doer in self.doers.items()},
            turns_used=state.current_turn,
            budget=state.session.budget,
            recent_messages=[
                {"from": m.sender, "content": m.content}
                for m in self._log[-RECENT_MESSAGES_FOR_DIRECTOR:]
            ],
            task_board=[
                {
                    "task": task.title,
                    "assignee": task.assignee or "unassigned",
                    "status": task.status.value,
                }
                for task in self._sessions.task_board.get_all_tasks()
            ],
        )
        response = await self.director.get_next_action(context, step.prompt)
        if not response.success:
            self._report_failure(DIRECTOR_ID, step, response.error or "DIRECTOR failed to respond")
            return False

        decision = self.director.parse_decision(response.content)
        routable = self._routable_target(decision)
        if routable:
            message_type, recipient = MessageType.TASK, routable
        elif decision is not None:
            message_type, recipient = MessageType.DECISION, step.origin
        else:
            message_type, recipient = MessageType.RESPONSE, step.origin
        self._record(DIRECTOR_ID, recipient, message_type, response.content)
        self._set_status(DIRECTOR_ID, AgentStatus.IDLE)

        if self._sessions.is_budget_exhausted():
            self._finish(BUDGET_EXHAUSTED)
            return True

        if decision is None:
            logger.info("No decision in DIRECTOR reply; awaiting further input")
            return True

        self._apply_decision(decision, step, response.content)
        return True

    async def _run_doer_step(self, step: DoerStep) -> bool:
        state = self._sessions.require_state()
        doer = self.doers.get(step.doer_id)
        if doer is None:
            logger.warning("Dropping instruction for unknown DOER %s", step.doer_id)
            return True

        self._set_status(doer.id, AgentStatus.ACTIVE)
        related_work = [
            f"{m.sender}: {m.content[:PREVIEW_CHARS]}..."
            for m in self._log
            if m.sender.startswith(DOER_PREFIX) and m.sender != doer.id
        ][-RELATED_WORK_FOR_DOER:]
        context = DoerContext(
            mission=state.session.mission,
            current_phase=state.phase,
            director_instructions=step.instruction,
            related_work=related_work,
        )
        response = await doer.execute(step.instruction, context)
        if not response.success:
            self._report_failure(doer.id, step, response.error or f"{doer.id} failed to respond")
            return False

        content = response.content
        if is_clarification_request(content):
            message_type = MessageType.QUESTION
        elif is_challenge(content):
            message_type = MessageType.COLLABORATION
        else:
            message_type = MessageType.RESPONSE
        self._record(doer.id, DIRECTOR_ID, message_type, content)
        self._settle_task(step.task_id, doer.id, message_type)
        self._set_status(doer.id, AgentStatus.IDLE, current_task=None)

        if self._sessions.is_budget_exhausted():
            self._finish(BUDGET_EXHAUSTED)
            return True

        self._queue.append(
            DirectorStep(
                f"Response from {doer.definition.name}:\n\n{content}\n\nWhat's the next step?",
                origin=doer.id,
            )
        )
        return True

    # Decisions ---------------------------------------------------------------

    def _routable_target(self, decision: Optional[Decision]) -> Optional[str]:
        if decision is None or decision.type is not DecisionType.TASK_ASSIGNMENT:
            return None
        if decision.target_doer in self.doers:
            return decision.target_doer
        return None

    def _apply_decision(self, decision: Decision, step: DirectorStep, content: str) -> None:
        self._events.publish(EventKind.DECISION, decision.to_dict())
        issue = decision.type.value
        if decision.target_doer:
            issue += f" -> {decision.target_doer}"
        self._sessions.record_decision(
            issue=issue,
            ruling=decision.ruling or decision.instruction or decision.reasoning,
            context=f"DIRECTOR reply to {step.origin}",
        )
        logger.info("DIRECTOR decision: %s", issue)

        if decision.type is DecisionType.TASK_ASSIGNMENT:
            target = self._routable_target(decision)
            if target is None:
                # Never guess a specialist; ask the DIRECTOR to name one.
                logger.info("Unroutable task assignment (%s); re-prompting DIRECTOR", decision.target_doer)
                self._queue.append(
                    DirectorStep(
                        "I could not tell which DOER should take that task. "
                        f"Name exactly one of: {', '.join(self._doer_labels())}.",
                        origin=SYSTEM_ID,
                    )
                )
                return
            task_id = self._prepare_task(target, content)
            self._queue.append(DoerStep(target, content, task_id))

        elif decision.type is DecisionType.COMPLETION:
            self._finish(decision.reasoning)

        elif decision.type is DecisionType.CONFLICT_RESOLUTION:
            if step.origin in self.doers:
                ruling = decision.ruling or content
                task_id = self._prepare_task(step.origin, ruling)
                self._queue.append(DoerStep(step.origin, ruling, task_id))

        elif decision.type is DecisionType.PHASE_TRANSITION:
            state = self._sessions.require_state()
            if decision.instruction:
                self._sessions.set_phase(decision.instruction)
            self._queue.append(
                DirectorStep(
                    f"The mission is now in phase '{state.phase}'. Assign the next task.",
                    origin=SYSTEM_ID,
                )
            )
        # Clarification: the DIRECTOR waits for operator input via post().

    def _doer_labels(self) -> List[str]:
        return [doer.definition.name for doer in self.doers.values()]

    # Task board --------------------------------------------------------------

    def _prepare_task(self, doer_id: str, instruction: str) -> str:
        """Reopen the DOER's blocked task, or create and assign a new one."""
        board = self._sessions.task_board
        blocked = [t for t in board.get_tasks_by_assignee(doer_id) if t.status is TaskStatus.BLOCKED]
        if blocked:
            task = board.unblock_task(blocked[0].id, DIRECTOR_ID)
        else:
            task = board.create_task(_task_title(instruction), instruction)
            board.assign_task(task.id, doer_id, DIRECTOR_ID)
        self._sessions.save_task_board()
        self._sessions.update_agent_status(doer_id, AgentStatus.WAITING, current_task=task.id)
        return task.id

    def _settle_task(self, task_id: Optional[str], doer_id: str, message_type: MessageType) -> None:
        if task_id is None:
            return
        board = self._sessions.task_board
        if board.start_task(task_id, doer_id) is None:
            logger.warning("Task %s could not be started by %s", task_id, doer_id)
            return
        if message_type is MessageType.QUESTION:
            board.block_task(task_id, DIRECTOR_ID, "Clarification requested", doer_id)
        elif message_type is MessageType.COLLABORATION:
            board.block_task(task_id, DIRECTOR_ID, "Challenge raised", doer_id)
        else:
            board.complete_task(task_id, doer_id)
        self._sessions.save_task_board()

    # Bookkeeping -------------------------------------------------------------

    def _record(self, sender: str, recipient: str, message_type: MessageType, content: str) -> None:
        message = self._sessions.record_turn(sender, recipient, message_type, content)
        self._log.append(message)
        self._events.publish(EventKind.MESSAGE, message.to_dict())

    def _set_status(self, agent_id: str, status: AgentStatus, **kwargs: object) -> None:
        if status is AgentStatus.ACTIVE:
            self._sessions.set_active_agent(agent_id)
        else:
            self._sessions.update_agent_status(agent_id, status, **kwargs)
        self._events.publish(EventKind.AGENT_STATE, {"agentId": agent_id, "status": status.value})

    def _report_failure(self, agent_id: str, step: Step, error: str) -> None:
        logger.error("%s step failed for %s: %s", step.kind, agent_id, error)
        self._set_status(agent_id, AgentStatus.BLOCKED)
        self._events.publish(
            EventKind.ERROR,
            {
                "sessionId": self._sessions.require_state().session.id,
                "agentId": agent_id,
                "step": step.kind,
                "error": error,
            },
        )

    def _finish(self, reason: str) -> None:
        self._finished = True
        self.completion_reason = reason
        self._queue.clear()
        self._sessions.complete()
        logger.info("Mission complete: %s", reason[:200])
        self._events.publish(
            EventKind.COMPLETE,
            {"sessionId": self._sessions.require_state().session.id, "reason": reason},
        )

    def _abort(self, step: Step, exc: StoreError) -> None:
        """Persistence failed mid-step: the mission cannot continue safely."""
        self._finished = True
        self._failed_step = step
        state = self._sessions.require_state()
        logger.error("Persistence failure during %s step: %s", step.kind, exc)
        self._events.publish(
            EventKind.ERROR,
            {
                "sessionId": state.session.id,
                "agentId": state.active_agent,
                "step": step.kind,
                "error": str(exc),
            },
        )
        try:
            self._sessions.fail()
        except StoreError as nested:
            logger.error("Could not mark session %s failed: %s", state.session.id, nested)
