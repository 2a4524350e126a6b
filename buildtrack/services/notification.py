"""
BuildTrack
Completion notifications.

One email per completion event, addressed to the project's manager.
Callers treat every method here as best-effort: a failure must never undo
or block the state change that triggered it.
"""

import logging

from flask import current_app

from buildtrack.models import db
from buildtrack.models.project import Project
from buildtrack.models.work_item import WorkItem
from buildtrack.services.email_service import EmailService

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for completion notifications."""

    @staticmethod
    def enabled() -> bool:
        return bool(current_app.config.get("COMPLETION_EMAILS_ENABLED", True))

    @staticmethod
    def notify_task_completed(task: WorkItem):
        """Email the project manager that a task reached 100%."""
        return NotificationService._send_completion(
            task,
            template_name="task_completed",
            headline="Task Completed!",
            item_label="Task",
        )

    @staticmethod
    def notify_phase_completed(phase: WorkItem):
        """Email the project manager that every task of a phase is done."""
        return NotificationService._send_completion(
            phase,
            template_name="phase_completed",
            headline="Phase Completed!",
            item_label="Phase",
        )

    @staticmethod
    def _send_completion(item, *, template_name, headline, item_label):
        if not NotificationService.enabled():
            return None

        project = db.session.get(Project, item.project_id)
        if project is None or not project.manager_email:
            logger.info(
                "No notification recipient for project=%s; skipping %s",
                item.project_id, template_name,
            )
            return None

        completed_at = item.completed_at
        log = EmailService.send_from_template(
            to_email=project.manager_email,
            to_name=project.manager_name,
            template_name=template_name,
            context={
                "headline": headline,
                "intro": f"The {item_label.lower()} below has been marked as completed.",
                "recipient_name": project.manager_name or "Project Manager",
                "project_name": project.name,
                "item_label": item_label,
                "item_name": item.name,
                "completed_at": (
                    completed_at.strftime("%B %d, %Y %H:%M") if completed_at else "—"
                ),
            },
            category=template_name,
            project_id=project.id,
            work_item_id=item.id,
        )
        db.session.commit()
        return log
