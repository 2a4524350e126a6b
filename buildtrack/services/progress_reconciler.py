"""
Progress Reconciler: the task/phase state machine.

Two entry points mutate a task and must stay separate:

    sync_task_from_evidence   photo evidence changed; the task's status and
                              percentage are re-derived from ALL its evidence
                              and overwrite whatever was stored (incl. a
                              manual value).
    apply_manual_edit         an operator set the fields directly; they are
                              stored verbatim and the aggregator is not run.

Both then re-evaluate the parent phase. When every child task is completed
and the phase is not, the phase cascades to ``completed``; that is the only
automatic route to a completed phase. ``complete_phase`` is the explicit,
gated route.

Ordering per operation:
    1. read (store failures abort here with nothing written)
    2. write + commit the task
    3. completion email (best-effort)
    4. phase evaluation / cascade (+ best-effort phase email)
    5. project status roll-up (fire-and-forget)

Every write re-derives from a full read, never from a delta, so concurrent
calls on the same task or phase converge without locking.

Transaction policy: each state change commits on its own; side effects
after a commit never roll that commit back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from buildtrack.core.exceptions import (
    CorruptionError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from buildtrack.models import db
from buildtrack.models.work_item import WORK_ITEM_STATUSES, WorkItem
from buildtrack.services.helpers.stores import (
    EvidenceStore,
    ProgressPatch,
    WorkItemStore,
    commit,
)
from buildtrack.services.notification import NotificationService
from buildtrack.services.phase_evaluator import PhaseEvaluation, evaluate
from buildtrack.services.progress_aggregator import aggregate
from buildtrack.services.project_status import refresh_project_status_quietly

logger = logging.getLogger(__name__)

MANUAL_EDIT_FIELDS = {"status", "completion_percentage"}


@dataclass
class ReconcileResult:
    """Outcome of one reconciler operation."""

    item: dict
    previous_status: str
    changed: bool = False
    cascaded: bool = False
    phase: dict | None = None
    evaluation: PhaseEvaluation | None = None
    orphaned: bool = False

    def to_dict(self) -> dict:
        return {
            "item": self.item,
            "previous_status": self.previous_status,
            "changed": self.changed,
            "cascaded": self.cascaded,
            "phase": self.phase,
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
            "orphaned": self.orphaned,
        }


# ── Helpers ──────────────────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


def completed_at_for(old_status: str, new_status: str,
                     current: datetime | None, now: datetime) -> datetime | None:
    """Timestamp bookkeeping for a status transition.

    Into ``completed`` → now; out of it → cleared; completed → completed keeps
    the original timestamp.
    """
    if new_status != "completed":
        return None
    if old_status != "completed":
        return now
    return current or now


def _load_task(project_id: int, task_id: str) -> WorkItem:
    task = WorkItemStore.get(project_id, task_id)
    if task is None or task.is_phase:
        raise NotFoundError(resource="Task", resource_id=task_id, project_id=project_id)
    return task


def _load_phase(project_id: int, phase_id: str) -> WorkItem:
    phase = WorkItemStore.get(project_id, phase_id)
    if phase is None or not phase.is_phase:
        raise NotFoundError(resource="Phase", resource_id=phase_id, project_id=project_id)
    return phase


def _notify_best_effort(notify, item: WorkItem) -> None:
    project_id, item_id = item.project_id, item.id
    try:
        notify(item)
    except Exception:
        db.session.rollback()
        logger.warning(
            "Completion notification failed for %s/%s; state change kept",
            project_id, item_id, exc_info=True,
            extra={"project_id": project_id, "work_item_id": item_id},
        )


def _log_corruption(exc: CorruptionError) -> None:
    logger.error(
        "Orphaned task detected: %s", exc,
        extra={
            "event_type": "data_corruption",
            "project_id": exc.project_id,
            "work_item_id": exc.task_id,
        },
    )


def validate_manual_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Check a manual edit payload; returns the cleaned fields."""
    if not fields:
        raise ValidationError("No fields to update")

    unknown = set(fields) - MANUAL_EDIT_FIELDS
    if unknown:
        raise ValidationError(
            f"Fields not editable here: {sorted(unknown)}",
            details={f: "not editable" for f in sorted(unknown)},
        )

    cleaned: dict[str, Any] = {}
    if "status" in fields:
        status = fields["status"]
        if status not in WORK_ITEM_STATUSES:
            raise ValidationError(
                f"Invalid status: '{status}'. Allowed: {sorted(WORK_ITEM_STATUSES)}",
                details={"status": "invalid"},
            )
        cleaned["status"] = status

    if "completion_percentage" in fields:
        pct = fields["completion_percentage"]
        if isinstance(pct, bool) or not isinstance(pct, (int, float)) or not 0 <= pct <= 100:
            raise ValidationError(
                "completion_percentage must be a number between 0 and 100",
                details={"completion_percentage": "out of range"},
            )
        if pct != int(pct):
            raise ValidationError(
                "completion_percentage must be a whole number",
                details={"completion_percentage": "not an integer"},
            )
        cleaned["completion_percentage"] = int(pct)
    return cleaned


# ── Phase cascade ────────────────────────────────────────────────────────────


def _mark_phase_completed(phase: WorkItem) -> None:
    now = _now()
    previous = phase.status
    WorkItemStore.apply_patch(phase, ProgressPatch(
        status="completed", completed_at=now, updated_at=now,
    ))
    commit("complete_phase")
    logger.info(
        "Phase %s completed (%s → completed)", phase.id, previous,
        extra={"project_id": phase.project_id, "work_item_id": phase.id},
    )
    _notify_best_effort(NotificationService.notify_phase_completed, phase)


def _cascade_phase(project_id: int, phase_id: str, task_id: str) -> ReconcileResult:
    """Evaluate a phase against its current children; complete it if allowed.

    Raises CorruptionError when ``phase_id`` (the parent of ``task_id``) does
    not name a phase.
    """
    phase = WorkItemStore.get(project_id, phase_id)
    if phase is None or not phase.is_phase:
        raise CorruptionError(project_id, task_id, phase_id)

    previous = phase.status
    evaluation = evaluate(WorkItemStore.list_children(project_id, phase_id))
    cascaded = evaluation.can_complete and previous != "completed"
    if cascaded:
        _mark_phase_completed(phase)
    return ReconcileResult(
        item=phase.to_dict(), previous_status=previous,
        changed=cascaded, cascaded=cascaded, evaluation=evaluation,
    )


def _after_task_write(task: WorkItem, previous_status: str, changed: bool) -> ReconcileResult:
    result = ReconcileResult(
        item=task.to_dict(), previous_status=previous_status, changed=changed,
    )
    project_id, task_id, parent_id = task.project_id, task.id, task.parent_phase_id

    if changed and task.status == "completed" and previous_status != "completed":
        _notify_best_effort(NotificationService.notify_task_completed, task)

    if parent_id:
        try:
            phase_result = _cascade_phase(project_id, parent_id, task_id)
        except CorruptionError as exc:
            _log_corruption(exc)
            result.orphaned = True
        else:
            result.phase = phase_result.item
            result.evaluation = phase_result.evaluation
            result.cascaded = phase_result.cascaded

    if changed or result.cascaded:
        refresh_project_status_quietly(project_id)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Public operations
# ═════════════════════════════════════════════════════════════════════════════


def sync_task_from_evidence(project_id: int, task_id: str) -> ReconcileResult:
    """Re-derive a task's status/percentage from its evidence and store it.

    Always overwrites stored values, manual ones included. If nothing
    changed, no write happens. An evidence read failure raises
    UpstreamUnavailableError before anything is written.
    """
    task = _load_task(project_id, task_id)
    evidence = EvidenceStore.list_for_task(project_id, task_id)
    derived = aggregate(evidence)

    previous = task.status
    changed = (
        task.status != derived.status
        or task.completion_percentage != derived.completion_percentage
    )
    if changed:
        now = _now()
        WorkItemStore.apply_patch(task, ProgressPatch(
            status=derived.status,
            completion_percentage=derived.completion_percentage,
            completed_at=completed_at_for(previous, derived.status, task.completed_at, now),
            updated_at=now,
        ))
        commit("sync_task_from_evidence")
        logger.info(
            "Task %s synced from %d evidence record(s): %s → %s (%d%%)",
            task_id, len(evidence), previous, derived.status, derived.completion_percentage,
            extra={"project_id": project_id, "work_item_id": task_id},
        )
    else:
        logger.debug("Task %s already in sync (%s, %d%%)", task_id,
                     derived.status, derived.completion_percentage)

    return _after_task_write(task, previous, changed)


def apply_manual_edit(project_id: int, task_id: str, fields: dict[str, Any]) -> ReconcileResult:
    """Store operator-supplied status/percentage verbatim."""
    cleaned = validate_manual_fields(fields)
    task = _load_task(project_id, task_id)

    previous = task.status
    new_status = cleaned.get("status", task.status)
    new_pct = cleaned.get("completion_percentage", task.completion_percentage)

    now = _now()
    WorkItemStore.apply_patch(task, ProgressPatch(
        status=new_status,
        completion_percentage=new_pct,
        completed_at=completed_at_for(previous, new_status, task.completed_at, now),
        updated_at=now,
    ))
    commit("apply_manual_edit")
    logger.info(
        "Task %s manually updated: %s → %s (%d%%)", task_id, previous, new_status, new_pct,
        extra={"project_id": project_id, "work_item_id": task_id},
    )
    return _after_task_write(task, previous, changed=True)


def can_complete_phase(project_id: int, phase_id: str) -> PhaseEvaluation:
    """Read-only gate check for a phase."""
    _load_phase(project_id, phase_id)
    return evaluate(WorkItemStore.list_children(project_id, phase_id))


def complete_phase(project_id: int, phase_id: str) -> ReconcileResult:
    """User-requested phase completion, still gated on all tasks completed.

    Completing an already-completed phase is a no-op.
    """
    phase = _load_phase(project_id, phase_id)
    evaluation = evaluate(WorkItemStore.list_children(project_id, phase_id))
    if not evaluation.can_complete:
        raise InvalidTransitionError(
            f"Phase cannot be completed: {evaluation.completed_tasks} of "
            f"{evaluation.total_tasks} task(s) completed",
            total_tasks=evaluation.total_tasks,
            completed_tasks=evaluation.completed_tasks,
        )

    previous = phase.status
    if previous == "completed":
        return ReconcileResult(item=phase.to_dict(), previous_status=previous,
                               evaluation=evaluation)

    _mark_phase_completed(phase)
    result = ReconcileResult(
        item=phase.to_dict(), previous_status=previous, changed=True, evaluation=evaluation,
    )
    refresh_project_status_quietly(project_id)
    return result


def reevaluate_phase(project_id: int, phase_id: str) -> ReconcileResult | None:
    """Re-run the cascade check for a phase after its task set changed.

    Returns None when the phase does not exist.
    """
    phase = WorkItemStore.get(project_id, phase_id)
    if phase is None or not phase.is_phase:
        logger.warning("Phase %s not found for re-evaluation", phase_id,
                       extra={"project_id": project_id, "work_item_id": phase_id})
        return None

    result = _cascade_phase(project_id, phase_id, task_id="")
    if result.cascaded:
        refresh_project_status_quietly(project_id)
    return result


def cleanup_orphaned_tasks(project_id: int) -> list[str]:
    """Delete tasks whose parent phase no longer exists, with their evidence.

    Returns the ids of the deleted tasks.
    """
    items = WorkItemStore.list_for_project(project_id)
    phase_ids = {i.id for i in items if i.is_phase}
    orphans = [
        i for i in items
        if not i.is_phase and i.parent_phase_id and i.parent_phase_id not in phase_ids
    ]
    if not orphans:
        return []

    orphan_ids = [o.id for o in orphans]
    for orphan in orphans:
        logger.error(
            "Deleting orphaned task %s (missing phase %s)", orphan.id, orphan.parent_phase_id,
            extra={"event_type": "data_corruption", "project_id": project_id,
                   "work_item_id": orphan.id},
        )
    evidence_deleted = EvidenceStore.delete_for_tasks(project_id, orphan_ids)
    for orphan in orphans:
        WorkItemStore.delete(orphan)
    commit("cleanup_orphaned_tasks")

    logger.warning(
        "Orphan cleanup removed %d task(s) and %d evidence record(s) from project %s",
        len(orphan_ids), evidence_deleted, project_id,
        extra={"event_type": "data_corruption", "project_id": project_id},
    )
    refresh_project_status_quietly(project_id)
    return orphan_ids
