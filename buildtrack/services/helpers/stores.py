"""
Data-access adapters for the two stores the progress engine talks to.

The engine only needs point lookups by composite key and range queries by
project or task; everything goes through ``WorkItemStore`` and
``EvidenceStore`` so store failures surface as one exception type:

    task = WorkItemStore.get(project_id, task_id)
    evidence = EvidenceStore.list_for_task(project_id, task_id)

Any ``SQLAlchemyError`` rolls the session back and is re-raised as
``UpstreamUnavailableError``. Callers never see a half-applied write and
never mistake a failed read for an empty result.

Writes by the engine are restricted to ``ProgressPatch`` fields.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from buildtrack.core.exceptions import UpstreamUnavailableError
from buildtrack.models import db
from buildtrack.models.evidence import EvidenceRecord
from buildtrack.models.work_item import WorkItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressPatch:
    """The only fields the progress engine may write on a work item.

    ``completion_percentage=None`` leaves the stored value alone (phases).
    ``completed_at`` is the final value to store, ``None`` clears it.
    """

    status: str
    completed_at: datetime | None
    updated_at: datetime
    completion_percentage: int | None = None


@contextmanager
def store_call(store: str, operation: str):
    """Translate store failures into ``UpstreamUnavailableError``."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning("%s call failed during %s: %s", store, operation, exc)
        raise UpstreamUnavailableError(store, operation, exc) from exc


def commit(operation: str) -> None:
    """Commit the session; a failed commit leaves nothing persisted."""
    with store_call("database", operation):
        db.session.commit()


class WorkItemStore:
    """Phase/task records keyed by ``(project_id, id)``."""

    NAME = "work_item_store"

    @classmethod
    def get(cls, project_id: int, item_id: str) -> WorkItem | None:
        with store_call(cls.NAME, "get"):
            return db.session.get(WorkItem, (project_id, item_id))

    @staticmethod
    def project_query(project_id: int):
        """Phases first, then tasks, each in creation order."""
        return (
            select(WorkItem)
            .where(WorkItem.project_id == project_id)
            .order_by(WorkItem.is_phase.desc(), WorkItem.created_at, WorkItem.id)
        )

    @staticmethod
    def children_query(project_id: int, phase_id: str):
        """Non-phase items whose parent is ``phase_id``."""
        return (
            select(WorkItem)
            .where(
                WorkItem.project_id == project_id,
                WorkItem.parent_phase_id == phase_id,
                WorkItem.is_phase.is_(False),
            )
            .order_by(WorkItem.created_at, WorkItem.id)
        )

    @classmethod
    def list_for_project(cls, project_id: int) -> list[WorkItem]:
        with store_call(cls.NAME, "list_for_project"):
            return list(db.session.execute(cls.project_query(project_id)).scalars())

    @classmethod
    def list_children(cls, project_id: int, phase_id: str) -> list[WorkItem]:
        with store_call(cls.NAME, "list_children"):
            return list(db.session.execute(cls.children_query(project_id, phase_id)).scalars())

    @classmethod
    def page(cls, query, *, limit: int, offset: int) -> tuple[list[WorkItem], int]:
        """One page of ``query`` plus the unpaged row count."""
        with store_call(cls.NAME, "page"):
            total = db.session.execute(
                select(func.count()).select_from(query.order_by(None).subquery())
            ).scalar_one()
            items = list(db.session.execute(query.limit(limit).offset(offset)).scalars())
        return items, total

    @staticmethod
    def apply_patch(item: WorkItem, patch: ProgressPatch) -> None:
        """Stage a patch on ``item``; the caller commits."""
        item.status = patch.status
        item.completed_at = patch.completed_at
        item.updated_at = patch.updated_at
        if patch.completion_percentage is not None:
            item.completion_percentage = patch.completion_percentage

    @classmethod
    def delete(cls, item: WorkItem) -> None:
        with store_call(cls.NAME, "delete"):
            db.session.delete(item)


class EvidenceStore:
    """Photo evidence keyed by ``(update_group_id, id)``."""

    NAME = "evidence_store"

    @classmethod
    def get(cls, update_group_id: str, evidence_id: str) -> EvidenceRecord | None:
        with store_call(cls.NAME, "get"):
            return db.session.get(EvidenceRecord, (update_group_id, evidence_id))

    @classmethod
    def list_for_task(cls, project_id: int, task_id: str) -> list[EvidenceRecord]:
        with store_call(cls.NAME, "list_for_task"):
            return list(db.session.execute(
                select(EvidenceRecord).where(
                    EvidenceRecord.project_id == project_id,
                    EvidenceRecord.task_id == task_id,
                )
            ).scalars())

    @classmethod
    def list_for_project(cls, project_id: int, *, status: str | None = None) -> list[EvidenceRecord]:
        with store_call(cls.NAME, "list_for_project"):
            query = select(EvidenceRecord).where(EvidenceRecord.project_id == project_id)
            if status:
                query = query.where(EvidenceRecord.confirmation_status == status)
            return list(db.session.execute(
                query.order_by(EvidenceRecord.uploaded_at)
            ).scalars())

    @classmethod
    def delete_for_tasks(cls, project_id: int, task_ids: list[str]) -> int:
        """Delete all evidence of the given tasks; returns rows staged for deletion."""
        if not task_ids:
            return 0
        with store_call(cls.NAME, "delete_for_tasks"):
            rows = db.session.execute(
                select(EvidenceRecord).where(
                    EvidenceRecord.project_id == project_id,
                    EvidenceRecord.task_id.in_(task_ids),
                )
            ).scalars().all()
            for row in rows:
                db.session.delete(row)
            return len(rows)
