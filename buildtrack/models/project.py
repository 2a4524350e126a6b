"""Project model: owning scope for work items and evidence."""

from datetime import datetime, timezone

from buildtrack.models import db

PROJECT_STATUSES = {"not_started", "in_progress", "on_hold", "completed", "overdue"}

# Statuses set by a person; the automatic roll-up never overrides these.
MANUAL_PROJECT_STATUSES = {"on_hold", "completed"}


class Project(db.Model):
    """A construction project. CRUD lives outside this service."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    location = db.Column(db.String(200), nullable=True)
    status = db.Column(
        db.String(30),
        nullable=False,
        default="not_started",
        comment="not_started | in_progress | on_hold | completed | overdue",
    )
    target_date = db.Column(db.Date, nullable=True, comment="Contract completion date")
    manager_name = db.Column(db.String(150), nullable=True)
    manager_email = db.Column(
        db.String(255), nullable=True,
        comment="Recipient of task/phase completion emails",
    )

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "status": self.status,
            "target_date": self.target_date.isoformat() if self.target_date else None,
            "manager_name": self.manager_name,
            "manager_email": self.manager_email,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.name}>"
