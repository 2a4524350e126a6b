"""
BuildTrack
Photo evidence model.

Evidence rows are keyed by ``(update_group_id, id)``: one progress update
groups the photos uploaded together. Each row supports exactly one task.
"""

import uuid
from datetime import datetime, timezone

from buildtrack.models import db

EVIDENCE_STATUSES = {"pending", "confirmed", "rejected"}

EVIDENCE_TRANSITIONS = {
    "pending":   ["confirmed", "rejected"],
    "confirmed": ["rejected"],
    "rejected":  [],
}


def validate_evidence_transition(old_status, new_status):
    """Return True if EvidenceRecord status transition is valid."""
    return new_status in EVIDENCE_TRANSITIONS.get(old_status, [])


class EvidenceRecord(db.Model):
    """One piece of progress evidence (a photo) for a task."""

    __tablename__ = "evidence_records"

    update_group_id = db.Column(db.String(36), primary_key=True)
    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    task_id = db.Column(db.String(36), nullable=False, index=True)

    file_url = db.Column(db.String(1000), nullable=True)
    caption = db.Column(db.String(500), default="")
    confirmation_status = db.Column(
        db.String(20),
        nullable=False,
        default="pending",
        comment="pending | confirmed | rejected",
    )
    ai_suggested_percentage = db.Column(
        db.Float, nullable=True,
        comment="Advisory estimate from image analysis; never aggregated",
    )
    user_input_percentage = db.Column(
        db.Float, nullable=True,
        comment="Operator-confirmed contribution; set only while confirmed",
    )
    confirmed_by = db.Column(db.String(150), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    uploaded_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "update_group_id": self.update_group_id,
            "id": self.id,
            "project_id": self.project_id,
            "task_id": self.task_id,
            "file_url": self.file_url,
            "caption": self.caption,
            "confirmation_status": self.confirmation_status,
            "ai_suggested_percentage": self.ai_suggested_percentage,
            "user_input_percentage": self.user_input_percentage,
            "confirmed_by": self.confirmed_by,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }

    def __repr__(self):
        return f"<EvidenceRecord {self.update_group_id}/{self.id} task={self.task_id} {self.confirmation_status}>"
