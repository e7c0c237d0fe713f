"""Core data models shared across arena components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

DIRECTOR_ID = "director"
DOER_PREFIX = "doer-"
SYSTEM_ID = "system"

# Session ids and message participants share one charset: they end up in
# directory names and markdown headings.
ID_PATTERN = r"^[a-zA-Z0-9_-]+$"

DEFAULT_PHASE = "active"


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def doer_id_for(doer_type: str) -> str:
    return f"{DOER_PREFIX}{doer_type}"


class SessionStatus(str, Enum):
    """Lifecycle states of a mission session."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class AgentKind(str, Enum):
    DIRECTOR = "director"
    DOER = "doer"


class AgentStatus(str, Enum):
    """Run-time status of a participant inside one mission."""

    IDLE = "idle"
    WAITING = "waiting"
    ACTIVE = "active"
    BLOCKED = "blocked"


class MessageType(str, Enum):
    TASK = "task"
    RESPONSE = "response"
    QUESTION = "question"
    DECISION = "decision"
    COLLABORATION = "collaboration"


class DecisionType(str, Enum):
    TASK_ASSIGNMENT = "task-assignment"
    CLARIFICATION = "clarification"
    CONFLICT_RESOLUTION = "conflict-resolution"
    PHASE_TRANSITION = "phase-transition"
    COMPLETION = "completion"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(slots=True)
class MissionSession:
    """Durable record of one mission, persisted as ``session.json``."""

    id: str
    mission: str
    doers: List[str]
    budget: int
    turns_used: int = 0
    status: SessionStatus = SessionStatus.RUNNING
    phase: str = DEFAULT_PHASE
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mission": self.mission,
            "doers": list(self.doers),
            "budget": self.budget,
            "turnsUsed": self.turns_used,
            "status": self.status.value,
            "phase": self.phase,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MissionSession:
        return cls(
            id=data["id"],
            mission=data["mission"],
            doers=list(data.get("doers", [])),
            budget=int(data["budget"]),
            turns_used=int(data.get("turnsUsed", 0)),
            status=SessionStatus(data.get("status", SessionStatus.RUNNING.value)),
            phase=data.get("phase", DEFAULT_PHASE),
            created_at=data.get("createdAt", utc_now_iso()),
            updated_at=data.get("updatedAt", utc_now_iso()),
        )


@dataclass(slots=True)
class AgentRunState:
    """Per-participant run-time state owned by the session manager."""

    id: str
    kind: AgentKind
    session_handle: str
    turns_allocated: int
    doer_type: Optional[str] = None
    status: AgentStatus = AgentStatus.IDLE
    turns_used: int = 0
    current_task: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Message:
    """Immutable transcript entry."""

    sender: str
    recipient: str
    type: MessageType
    content: str
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "from": self.sender,
            "to": self.recipient,
            "type": self.type.value,
            "content": self.content,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Message:
        return cls(
            sender=data["from"],
            recipient=data["to"],
            type=MessageType(data["type"]),
            content=data.get("content", ""),
            timestamp=data.get("timestamp", ""),
        )


@dataclass(frozen=True, slots=True)
class Decision:
    """Control signal extracted from a DIRECTOR reply."""

    type: DecisionType
    reasoning: str
    target_doer: Optional[str] = None
    instruction: Optional[str] = None
    ruling: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value, "reasoning": self.reasoning}
        if self.target_doer is not None:
            data["targetDoer"] = self.target_doer
        if self.instruction is not None:
            data["instruction"] = self.instruction
        if self.ruling is not None:
            data["ruling"] = self.ruling
        return data


@dataclass(frozen=True, slots=True)
class DecisionRecord:
    """One line of ``decision-log.jsonl``."""

    issue: str
    ruling: str
    context: str
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "issue": self.issue,
            "ruling": self.ruling,
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DecisionRecord:
        return cls(
            issue=data.get("issue", ""),
            ruling=data.get("ruling", ""),
            context=data.get("context", ""),
            timestamp=data.get("timestamp", ""),
        )


@dataclass(slots=True)
class Task:
    """Unit of work tracked by the task board."""

    id: str
    title: str
    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    assignee: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    parent_task_id: Optional[str] = None
    subtasks: List[str] = field(default_factory=list)
    blocked_by: Optional[str] = None
    blocked_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "assignee": self.assignee,
            "status": self.status.value,
            "priority": self.priority.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "completedAt": self.completed_at,
            "parentTaskId": self.parent_task_id,
            "subtasks": list(self.subtasks),
            "blockedBy": self.blocked_by,
            "blockedReason": self.blocked_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Task:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            priority=TaskPriority(data.get("priority", TaskPriority.MEDIUM.value)),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            assignee=data.get("assignee"),
            created_at=data.get("createdAt", utc_now_iso()),
            updated_at=data.get("updatedAt", utc_now_iso()),
            completed_at=data.get("completedAt"),
            parent_task_id=data.get("parentTaskId"),
            subtasks=list(data.get("subtasks", [])),
            blocked_by=data.get("blockedBy"),
            blocked_reason=data.get("blockedReason"),
        )


@dataclass(frozen=True, slots=True)
class Transition:
    """Immutable record of a task status change."""

    task_id: str
    from_status: TaskStatus
    to_status: TaskStatus
    actor: str
    reason: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id,
            "from": self.from_status.value,
            "to": self.to_status.value,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Transition:
        return cls(
            task_id=data.get("taskId", ""),
            from_status=TaskStatus(data["from"]),
            to_status=TaskStatus(data["to"]),
            actor=data.get("actor", ""),
            reason=data.get("reason"),
            timestamp=data.get("timestamp", ""),
        )


@dataclass(frozen=True, slots=True)
class BudgetEntry:
    agent_id: str
    turns_used: int
    turns_allocated: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "turnsUsed": self.turns_used,
            "turnsAllocated": self.turns_allocated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BudgetEntry:
        return cls(
            agent_id=data["agentId"],
            turns_used=int(data.get("turnsUsed", 0)),
            turns_allocated=int(data.get("turnsAllocated", 0)),
        )


@dataclass(slots=True)
class SessionState:
    """In-memory state of the mission currently driven by the router."""

    session: MissionSession
    agents: Dict[str, AgentRunState]
    current_turn: int = 0
    active_agent: Optional[str] = None

    @property
    def phase(self) -> str:
        return self.session.phase

    def doer_ids(self) -> List[str]:
        return [agent_id for agent_id, agent in self.agents.items() if agent.kind is AgentKind.DOER]
