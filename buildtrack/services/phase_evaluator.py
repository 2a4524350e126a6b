"""Phase completion gate: may a phase be completed given its child tasks?"""

from dataclasses import dataclass
from typing import Iterable

from buildtrack.models.work_item import WorkItem


@dataclass(frozen=True)
class PhaseEvaluation:
    can_complete: bool
    total_tasks: int
    completed_tasks: int

    def to_dict(self) -> dict:
        return {
            "can_complete": self.can_complete,
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
        }


def evaluate(child_tasks: Iterable[WorkItem]) -> PhaseEvaluation:
    """Evaluate the children of one phase.

    A phase with no tasks is empty, not done: ``can_complete`` is only true
    when there is at least one task and every task is completed. The counts
    are informational.
    """
    tasks = [t for t in child_tasks if not t.is_phase]
    completed = sum(1 for t in tasks if t.status == "completed")
    return PhaseEvaluation(
        can_complete=bool(tasks) and completed == len(tasks),
        total_tasks=len(tasks),
        completed_tasks=completed,
    )
