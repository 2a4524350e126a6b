"""Work-item service layer: create/list/delete for phases and tasks.

Transaction policy: public functions commit on success.

Deleting a phase deletes its tasks and their evidence. Deleting a task
deletes its evidence and re-evaluates the former parent phase, since
removing the last incomplete task can leave the phase fully done.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from buildtrack.core.exceptions import NotFoundError, ValidationError
from buildtrack.models import db
from buildtrack.models.project import Project
from buildtrack.models.work_item import WORK_ITEM_STATUSES, WorkItem
from buildtrack.services import progress_reconciler
from buildtrack.services.helpers.stores import EvidenceStore, WorkItemStore, commit
from buildtrack.services.project_status import refresh_project_status_quietly
from buildtrack.utils.helpers import parse_date

logger = logging.getLogger(__name__)

_NAME_MAX = 200


def _require_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def _date_field(data: dict[str, Any], key: str):
    raw = data.get(key)
    parsed = parse_date(raw)
    if raw and parsed is None:
        raise ValidationError(f"{key} is not a valid date", details={key: "invalid date"})
    return parsed


def list_work_items(project_id: int, *, phase_id: str | None = None) -> list[WorkItem]:
    """All phases and tasks of a project, or the tasks of one phase."""
    _require_project(project_id)
    if phase_id:
        return WorkItemStore.list_children(project_id, phase_id)
    return WorkItemStore.list_for_project(project_id)


def work_items_query(project_id: int, *, phase_id: str | None = None):
    """Unexecuted select behind ``list_work_items``, for paged listings."""
    _require_project(project_id)
    if phase_id:
        return WorkItemStore.children_query(project_id, phase_id)
    return WorkItemStore.project_query(project_id)


def create_work_item(project_id: int, data: dict[str, Any]) -> WorkItem:
    """Create a phase or a task.

    Phases start without a parent and cannot be created completed (that is
    what the completion gate is for). A task's ``parent_phase_id`` must name
    a phase of the same project.
    """
    _require_project(project_id)

    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if len(name) > _NAME_MAX:
        raise ValidationError(f"name exceeds maximum length of {_NAME_MAX} characters",
                              details={"name": "too long"})

    is_phase = bool(data.get("is_phase", False))
    parent_phase_id = data.get("parent_phase_id") or None
    status = data.get("status") or "not_started"
    if status not in WORK_ITEM_STATUSES:
        raise ValidationError(
            f"Invalid status: '{status}'. Allowed: {sorted(WORK_ITEM_STATUSES)}",
            details={"status": "invalid"},
        )

    if is_phase:
        if parent_phase_id:
            raise ValidationError("A phase cannot have a parent phase",
                                  details={"parent_phase_id": "not allowed on phases"})
        if status == "completed":
            raise ValidationError("A phase can only be completed once all of its tasks are",
                                  details={"status": "completed not allowed"})
    elif parent_phase_id:
        parent = WorkItemStore.get(project_id, parent_phase_id)
        if parent is None or not parent.is_phase:
            raise ValidationError(f"Parent phase {parent_phase_id} not found in project",
                                  details={"parent_phase_id": "unknown phase"})

    pct = data.get("completion_percentage", 0)
    if is_phase:
        pct = 0
    elif isinstance(pct, bool) or not isinstance(pct, int) or not 0 <= pct <= 100:
        raise ValidationError("completion_percentage must be an integer between 0 and 100",
                              details={"completion_percentage": "out of range"})

    cost = data.get("estimated_cost")
    if cost is not None:
        try:
            cost = Decimal(str(cost))
        except InvalidOperation:
            raise ValidationError("estimated_cost must be numeric",
                                  details={"estimated_cost": "not a number"}) from None

    item = WorkItem(
        project_id=project_id,
        name=name,
        description=data.get("description", ""),
        is_phase=is_phase,
        parent_phase_id=None if is_phase else parent_phase_id,
        status=status,
        completion_percentage=pct,
        completed_at=progress_reconciler.completed_at_for(
            "not_started", status, None, datetime.now(timezone.utc),
        ),
        estimated_cost=cost,
        start_date=_date_field(data, "start_date"),
        end_date=_date_field(data, "end_date"),
        assigned_to=data.get("assigned_to"),
    )
    db.session.add(item)
    commit("create_work_item")
    logger.info("%s created id=%s project=%s", "Phase" if is_phase else "Task", item.id, project_id,
                extra={"project_id": project_id, "work_item_id": item.id})

    refresh_project_status_quietly(project_id)
    return item


def delete_work_item(project_id: int, item_id: str) -> dict:
    """Delete a phase (with its tasks) or a single task, plus their evidence.

    Returns:
        {"deleted": [ids], "evidence_deleted": n, "phase": reconcile dict | None}
    """
    item = WorkItemStore.get(project_id, item_id)
    if item is None:
        raise NotFoundError(resource="WorkItem", resource_id=item_id, project_id=project_id)

    is_phase = item.is_phase
    if is_phase:
        tasks = WorkItemStore.list_children(project_id, item_id)
        parent_phase_id = None
    else:
        tasks = [item]
        parent_phase_id = item.parent_phase_id

    task_ids = [t.id for t in tasks]
    evidence_deleted = EvidenceStore.delete_for_tasks(project_id, task_ids)
    for task in tasks:
        WorkItemStore.delete(task)
    if is_phase:
        WorkItemStore.delete(item)
    commit("delete_work_item")

    deleted = task_ids + ([item_id] if item_id not in task_ids else [])
    logger.info("Deleted %d work item(s) and %d evidence record(s) from project %s",
                len(deleted), evidence_deleted, project_id,
                extra={"project_id": project_id, "work_item_id": item_id})

    phase_result = None
    if parent_phase_id:
        phase_result = progress_reconciler.reevaluate_phase(project_id, parent_phase_id)

    refresh_project_status_quietly(project_id)
    return {
        "deleted": deleted,
        "evidence_deleted": evidence_deleted,
        "phase": phase_result.to_dict() if phase_result else None,
    }
