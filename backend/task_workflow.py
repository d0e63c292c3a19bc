# task_workflow.py — Task status state machine

from typing import Dict, FrozenSet

from errors import InvalidStatusTransition
from models import TaskStatus

TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.TODO: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.IN_REVIEW, TaskStatus.BLOCKED, TaskStatus.CANCELLED}),
    TaskStatus.IN_REVIEW: frozenset({TaskStatus.DONE, TaskStatus.IN_PROGRESS}),
    TaskStatus.DONE: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.CANCELLED: frozenset(),
}


def allowed_transitions(current: TaskStatus) -> FrozenSet[TaskStatus]:
    return TRANSITIONS[TaskStatus(current)]


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return TaskStatus(target) in allowed_transitions(current)


def ensure_transition(current: TaskStatus, target: TaskStatus) -> TaskStatus:
    """Return the target status, or raise InvalidStatusTransition.

    Setting a status to its current value is not a transition and is rejected.
    """
    current, target = TaskStatus(current), TaskStatus(target)
    if not can_transition(current, target):
        allowed = ", ".join(sorted(s.value for s in allowed_transitions(current))) or "none"
        raise InvalidStatusTransition(
            f"Cannot transition task from {current.value} to {target.value} (allowed: {allowed})"
        )
    return target
