"""
Project status roll-up.

Rules:
    - ``on_hold`` and ``completed`` are set by people and never overridden
    - nothing recorded yet (no phases, tasks or evidence) → ``not_started``
    - anything recorded → ``in_progress``
    - past ``target_date`` and not completed → ``overdue``

``refresh_project_status`` runs after every work-item mutation.
``check_overdue_projects`` is the daily sweep, exposed as
``flask check-overdue``.
"""

import logging
from datetime import date, datetime, timezone

from sqlalchemy import func, select

from buildtrack.core.exceptions import NotFoundError
from buildtrack.models import db
from buildtrack.models.evidence import EvidenceRecord
from buildtrack.models.project import MANUAL_PROJECT_STATUSES, Project
from buildtrack.services.helpers.stores import EvidenceStore, WorkItemStore, commit, store_call

logger = logging.getLogger(__name__)


def calculate_project_status(
    project: Project,
    *,
    work_item_count: int,
    evidence_count: int,
    today: date | None = None,
) -> str:
    """Return the status the project should have right now."""
    if project.status in MANUAL_PROJECT_STATUSES:
        return project.status

    if work_item_count == 0 and evidence_count == 0:
        status = "not_started"
    else:
        status = "in_progress"

    today = today or date.today()
    if project.target_date and today > project.target_date:
        status = "overdue"
    return status


def _evidence_count(project_id: int) -> int:
    with store_call("evidence_store", "count_for_project"):
        return db.session.execute(
            select(func.count()).select_from(EvidenceRecord)
            .where(EvidenceRecord.project_id == project_id)
        ).scalar_one()


def refresh_project_status(project_id: int) -> str | None:
    """Recompute and persist one project's status. Returns the new status."""
    project = db.session.get(Project, project_id)
    if project is None:
        return None

    new_status = calculate_project_status(
        project,
        work_item_count=len(WorkItemStore.list_for_project(project_id)),
        evidence_count=_evidence_count(project_id),
    )
    if new_status != project.status:
        old = project.status
        project.status = new_status
        commit("refresh_project_status")
        logger.info(
            "Project %s status auto-updated: %s → %s", project_id, old, new_status,
            extra={"project_id": project_id},
        )
    return new_status


def refresh_project_status_quietly(project_id: int) -> None:
    """Fire-and-forget wrapper: the roll-up never fails the caller."""
    try:
        refresh_project_status(project_id)
    except Exception:
        db.session.rollback()
        logger.warning("Project status roll-up failed for project=%s", project_id,
                       exc_info=True, extra={"project_id": project_id})


def check_overdue_projects(today: date | None = None) -> int:
    """Mark every past-due, non-manual project as overdue. Returns the count."""
    today = today or date.today()
    projects = db.session.execute(
        select(Project).where(Project.target_date.is_not(None))
    ).scalars().all()

    overdue = 0
    for project in projects:
        if project.status in MANUAL_PROJECT_STATUSES or project.status == "overdue":
            continue
        if today > project.target_date:
            logger.info("Project %s (%s) is overdue (due %s)",
                        project.id, project.name, project.target_date.isoformat(),
                        extra={"project_id": project.id})
            project.status = "overdue"
            project.updated_at = datetime.now(timezone.utc)
            overdue += 1

    if overdue:
        commit("check_overdue_projects")
    logger.info("Overdue check complete: %d project(s) marked overdue", overdue)
    return overdue


def summarize_project(project_id: int) -> dict:
    """Status plus phase/task counts for the project dashboard."""
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)

    items = WorkItemStore.list_for_project(project_id)
    phases = [i for i in items if i.is_phase]
    tasks = [i for i in items if not i.is_phase]
    pending = EvidenceStore.list_for_project(project_id, status="pending")

    return {
        "project": project.to_dict(),
        "phases": {
            "total": len(phases),
            "completed": sum(1 for p in phases if p.status == "completed"),
        },
        "tasks": {
            "total": len(tasks),
            "completed": sum(1 for t in tasks if t.status == "completed"),
            "in_progress": sum(1 for t in tasks if t.status == "in_progress"),
        },
        "pending_evidence": len(pending),
    }
