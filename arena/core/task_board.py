"""Task state machine for arena sessions."""
from __future__ import annotations

import uuid
from typing import Any, Dict, FrozenSet, List, Optional

from .models import Task, TaskPriority, TaskStatus, Transition, utc_now_iso

_NON_TERMINAL: FrozenSet[TaskStatus] = frozenset(
    {TaskStatus.PENDING, TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}
)

# Source states accepted by each mutation.
ALLOWED_SOURCES: Dict[str, FrozenSet[TaskStatus]] = {
    "assign": frozenset({TaskStatus.PENDING}),
    "start": frozenset({TaskStatus.ASSIGNED}),
    "block": frozenset({TaskStatus.PENDING, TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS}),
    "unblock": frozenset({TaskStatus.BLOCKED}),
    "complete": frozenset({TaskStatus.IN_PROGRESS}),
    "cancel": _NON_TERMINAL,
}


class TaskBoard:
    """Track unit-of-work lifecycle independently of any agent.

    Mutations return the updated task, or ``None`` when the task is unknown
    or the transition is not allowed from its current status. Rejected
    transitions never change state.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._transitions: List[Transition] = []

    def create_task(
        self,
        title: str,
        description: str,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        parent_task_id: Optional[str] = None,
    ) -> Task:
        task = Task(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            priority=TaskPriority(priority),
            parent_task_id=parent_task_id,
        )
        self._tasks[task.id] = task
        if parent_task_id:
            parent = self._tasks.get(parent_task_id)
            if parent is not None:
                parent.subtasks.append(task.id)
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def assign_task(self, task_id: str, assignee: str, actor: str) -> Optional[Task]:
        task = self._accept(task_id, "assign")
        if task is None:
            return None
        task.assignee = assignee
        return self._move(task, TaskStatus.ASSIGNED, actor, f"Assigned to {assignee}")

    def start_task(self, task_id: str, actor: str) -> Optional[Task]:
        task = self._accept(task_id, "start")
        if task is None:
            return None
        return self._move(task, TaskStatus.IN_PROGRESS, actor)

    def block_task(self, task_id: str, blocked_by: str, reason: str, actor: str) -> Optional[Task]:
        task = self._accept(task_id, "block")
        if task is None:
            return None
        task.blocked_by = blocked_by
        task.blocked_reason = reason
        return self._move(task, TaskStatus.BLOCKED, actor, reason)

    def unblock_task(self, task_id: str, actor: str) -> Optional[Task]:
        task = self._accept(task_id, "unblock")
        if task is None:
            return None
        task.blocked_by = None
        task.blocked_reason = None
        target = TaskStatus.ASSIGNED if task.assignee else TaskStatus.PENDING
        return self._move(task, target, actor, "Unblocked")

    def complete_task(self, task_id: str, actor: str) -> Optional[Task]:
        task = self._accept(task_id, "complete")
        if task is None:
            return None
        task.completed_at = utc_now_iso()
        return self._move(task, TaskStatus.COMPLETED, actor)

    def cancel_task(self, task_id: str, actor: str, reason: str) -> Optional[Task]:
        task = self._accept(task_id, "cancel")
        if task is None:
            return None
        task.blocked_by = None
        task.blocked_reason = None
        return self._move(task, TaskStatus.CANCELLED, actor, reason)

    def _accept(self, task_id: str, operation: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None or task.status not in ALLOWED_SOURCES[operation]:
            return None
        return task

    def _move(
        self,
        task: Task,
        target: TaskStatus,
        actor: str,
        reason: Optional[str] = None,
    ) -> Task:
        previous = task.status
        task.status = target
        task.updated_at = task.completed_at if target is TaskStatus.COMPLETED else utc_now_iso()
        self._transitions.append(
            Transition(
                task_id=task.id,
                from_status=previous,
                to_status=target,
                actor=actor,
                reason=reason,
            )
        )
        return task

    # Queries -----------------------------------------------------------------

    def get_all_tasks(self) -> List[Task]:
        return list(self._tasks.values())

    def get_tasks_by_status(self, status: TaskStatus | str) -> List[Task]:
        wanted = TaskStatus(status)
        return [task for task in self._tasks.values() if task.status is wanted]

    def get_tasks_by_assignee(self, assignee: str) -> List[Task]:
        return [task for task in self._tasks.values() if task.assignee == assignee]

    def get_pending_tasks(self) -> List[Task]:
        return self.get_tasks_by_status(TaskStatus.PENDING)

    def get_blocked_tasks(self) -> List[Task]:
        return self.get_tasks_by_status(TaskStatus.BLOCKED)

    def get_transitions(self, task_id: Optional[str] = None) -> List[Transition]:
        if task_id is None:
            return list(self._transitions)
        return [t for t in self._transitions if t.task_id == task_id]

    def get_stats(self) -> Dict[str, int]:
        """Count tasks per status, plus the total."""
        stats = {"total": len(self._tasks)}
        for status in TaskStatus:
            stats[status.value] = 0
        for task in self._tasks.values():
            stats[task.status.value] += 1
        return stats

    # Snapshot ----------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self._tasks.values()],
            "transitions": [transition.to_dict() for transition in self._transitions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TaskBoard:
        board = cls()
        for raw in data.get("tasks", []):
            task = Task.from_dict(raw)
            board._tasks[task.id] = task
        board._transitions = [Transition.from_dict(raw) for raw in data.get("transitions", [])]
        return board
