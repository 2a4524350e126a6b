"""
BuildTrack
Work breakdown model: phases and tasks share one table.

A row with ``is_phase=True`` is a grouping container; every other row is a
task that may point at a phase of the same project via ``parent_phase_id``.
The parent reference is deliberately a plain column (no FK) so that a
dangling reference left behind by an out-of-band delete can be detected
and cleaned up instead of failing at the database level.
"""

import uuid
from datetime import datetime, timezone

from buildtrack.models import db

WORK_ITEM_STATUSES = {"not_started", "in_progress", "completed", "on_hold"}


def _new_id() -> str:
    return str(uuid.uuid4())


class WorkItem(db.Model):
    """Phase or task identified by ``(project_id, id)``."""

    __tablename__ = "work_items"

    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        primary_key=True,
    )
    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    is_phase = db.Column(db.Boolean, nullable=False, default=False)
    parent_phase_id = db.Column(
        db.String(36), nullable=True, index=True,
        comment="Phase id within the same project (tasks only)",
    )
    status = db.Column(
        db.String(30),
        nullable=False,
        default="not_started",
        comment="not_started | in_progress | completed | on_hold",
    )
    completion_percentage = db.Column(db.Integer, nullable=False, default=0, comment="0-100")
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Carried through, not used by the progress engine
    estimated_cost = db.Column(db.Numeric(14, 2), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    assigned_to = db.Column(db.String(150), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_work_items_project_parent", "project_id", "parent_phase_id"),
    )

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_phase": self.is_phase,
            "parent_phase_id": self.parent_phase_id,
            "status": self.status,
            "completion_percentage": self.completion_percentage,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "estimated_cost": float(self.estimated_cost) if self.estimated_cost is not None else None,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "assigned_to": self.assigned_to,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        kind = "Phase" if self.is_phase else "Task"
        return f"<{kind} {self.project_id}/{self.id}: {self.name}>"
