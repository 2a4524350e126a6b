"""
Evidence lifecycle: the event source for task sync.

Photos are uploaded elsewhere; this module registers the resulting
evidence record, moves it through ``pending → confirmed | rejected`` and
re-syncs the owning task after every change that can affect its progress:

    record, result = confirm_evidence(group_id, evidence_id, percentage=40)
    result.item["completion_percentage"]   # re-derived from all evidence

Transaction policy: the evidence change is staged, the task sync runs
against it, and the two commit together. A store failure during the sync
rolls the evidence change back, so nothing is half-applied.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from buildtrack.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from buildtrack.models import db
from buildtrack.models.evidence import EvidenceRecord, validate_evidence_transition
from buildtrack.services import progress_reconciler
from buildtrack.services.helpers.stores import EvidenceStore, WorkItemStore, commit
from buildtrack.services.progress_reconciler import ReconcileResult
from buildtrack.services.project_status import refresh_project_status_quietly

logger = logging.getLogger(__name__)


def _percentage(value: Any, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number", details={field: "not a number"})
    if not 0 <= value <= 100:
        raise ValidationError(f"{field} must be between 0 and 100", details={field: "out of range"})
    return float(value)


def _get_evidence(update_group_id: str, evidence_id: str) -> EvidenceRecord:
    record = EvidenceStore.get(update_group_id, evidence_id)
    if record is None:
        raise NotFoundError(resource="Evidence", resource_id=f"{update_group_id}/{evidence_id}")
    return record


def _transition(record: EvidenceRecord, new_status: str) -> None:
    old = record.confirmation_status
    if not validate_evidence_transition(old, new_status):
        raise InvalidTransitionError(f"Invalid transition: {old} → {new_status}")
    record.confirmation_status = new_status


def _sync_staged(project_id: int, task_id: str, operation: str) -> ReconcileResult:
    """Sync the task with the evidence change still staged, then commit.

    The sync reads through the session, so it sees the staged change; when
    it rewrites the task both land in one commit. Any failure before that
    commit discards the staged change.
    """
    try:
        result = progress_reconciler.sync_task_from_evidence(project_id, task_id)
    except Exception:
        db.session.rollback()
        raise
    commit(operation)
    return result


# ── Read ─────────────────────────────────────────────────────────────────────


def list_evidence_for_task(project_id: int, task_id: str) -> list[EvidenceRecord]:
    return EvidenceStore.list_for_task(project_id, task_id)


def list_pending_for_project(project_id: int) -> list[EvidenceRecord]:
    return EvidenceStore.list_for_project(project_id, status="pending")


# ── Write ────────────────────────────────────────────────────────────────────


def record_evidence(data: dict[str, Any]) -> EvidenceRecord:
    """Register an uploaded photo as pending evidence for a task.

    Required: project_id, task_id. Optional: update_group_id (generated
    when absent), file_url, caption, ai_suggested_percentage.
    """
    project_id = data.get("project_id")
    task_id = data.get("task_id")
    if not project_id or not task_id:
        raise ValidationError("project_id and task_id are required",
                              details={"project_id": "required", "task_id": "required"})

    task = WorkItemStore.get(project_id, task_id)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id, project_id=project_id)
    if task.is_phase:
        raise ValidationError("Evidence must be attached to a task, not a phase",
                              details={"task_id": "is a phase"})

    suggested = data.get("ai_suggested_percentage")
    record = EvidenceRecord(
        update_group_id=data.get("update_group_id") or str(uuid.uuid4()),
        project_id=project_id,
        task_id=task_id,
        file_url=data.get("file_url"),
        caption=(data.get("caption") or "").strip()[:500],
        confirmation_status="pending",
        ai_suggested_percentage=(
            _percentage(suggested, "ai_suggested_percentage") if suggested is not None else None
        ),
    )
    db.session.add(record)
    commit("record_evidence")
    logger.info("Evidence recorded %s/%s for task=%s", record.update_group_id, record.id, task_id,
                extra={"project_id": project_id, "work_item_id": task_id})

    refresh_project_status_quietly(project_id)
    return record


def confirm_evidence(
    update_group_id: str,
    evidence_id: str,
    percentage: Any,
    confirmed_by: str | None = None,
) -> tuple[EvidenceRecord, ReconcileResult]:
    """Confirm evidence with the operator's percentage, then sync its task."""
    pct = _percentage(percentage, "percentage")
    record = _get_evidence(update_group_id, evidence_id)
    _transition(record, "confirmed")
    record.user_input_percentage = pct
    record.confirmed_by = confirmed_by
    record.confirmed_at = datetime.now(timezone.utc)

    result = _sync_staged(record.project_id, record.task_id, "confirm_evidence")
    logger.info("Evidence %s/%s confirmed at %.1f%%", update_group_id, evidence_id, pct,
                extra={"project_id": record.project_id, "work_item_id": record.task_id})
    return record, result


def reject_evidence(update_group_id: str, evidence_id: str) -> tuple[EvidenceRecord, ReconcileResult]:
    """Reject evidence (dropping any confirmed percentage), then sync its task."""
    record = _get_evidence(update_group_id, evidence_id)
    _transition(record, "rejected")
    record.user_input_percentage = None

    result = _sync_staged(record.project_id, record.task_id, "reject_evidence")
    logger.info("Evidence %s/%s rejected", update_group_id, evidence_id,
                extra={"project_id": record.project_id, "work_item_id": record.task_id})
    return record, result


def delete_evidence(update_group_id: str, evidence_id: str) -> ReconcileResult:
    """Delete evidence, then sync its task."""
    record = _get_evidence(update_group_id, evidence_id)
    project_id, task_id = record.project_id, record.task_id
    db.session.delete(record)

    result = _sync_staged(project_id, task_id, "delete_evidence")
    logger.info("Evidence %s/%s deleted", update_group_id, evidence_id,
                extra={"project_id": project_id, "work_item_id": task_id})
    return result
