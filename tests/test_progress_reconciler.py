"""
Progress reconciler: sync, manual edit, phase cascade and failure handling.

Covers:
    - sync re-derives from all evidence and overwrites manual values
    - manual edits are stored verbatim and never run the aggregator
    - a phase cascades to completed exactly once, when its last task completes
    - store failures leave the task untouched
    - notification failures never undo the state change
    - orphaned tasks are flagged and removed by the cleanup routine
"""

import logging
import uuid

import pytest
from sqlalchemy.exc import OperationalError

from buildtrack.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from buildtrack.models import db
from buildtrack.models.evidence import EvidenceRecord
from buildtrack.models.work_item import WorkItem
from buildtrack.services import progress_reconciler
from buildtrack.services.helpers.stores import EvidenceStore
from buildtrack.services.notification import NotificationService


# ═════════════════════════════════════════════════════════════════════════════
# ORM Helper Factories
# ═════════════════════════════════════════════════════════════════════════════


def _phase(project, name="Foundation", status="not_started") -> WorkItem:
    phase = WorkItem(project_id=project.id, name=name, is_phase=True, status=status)
    db.session.add(phase)
    db.session.commit()
    return phase


def _task(project, phase=None, name="Pour slab", status="not_started", pct=0) -> WorkItem:
    task = WorkItem(
        project_id=project.id,
        name=name,
        parent_phase_id=phase.id if phase else None,
        status=status,
        completion_percentage=pct,
    )
    db.session.add(task)
    db.session.commit()
    return task


def _evidence(task, pct, status="confirmed") -> EvidenceRecord:
    record = EvidenceRecord(
        update_group_id=str(uuid.uuid4()),
        project_id=task.project_id,
        task_id=task.id,
        confirmation_status=status,
        user_input_percentage=pct,
    )
    db.session.add(record)
    db.session.commit()
    return record


def _reload(item) -> WorkItem:
    db.session.expire_all()
    return db.session.get(WorkItem, (item.project_id, item.id))


# ═════════════════════════════════════════════════════════════════════════════
# Sync from evidence
# ═════════════════════════════════════════════════════════════════════════════


class TestSyncFromEvidence:
    def test_additive_evidence(self, project):
        task = _task(project)
        _evidence(task, 36)
        _evidence(task, 45)

        result = progress_reconciler.sync_task_from_evidence(project.id, task.id)

        assert result.changed is True
        assert result.item["status"] == "in_progress"
        assert result.item["completion_percentage"] == 81

        _evidence(task, 25)
        result = progress_reconciler.sync_task_from_evidence(project.id, task.id)
        assert result.item["status"] == "completed"
        assert result.item["completion_percentage"] == 100

    def test_second_sync_is_a_no_op(self, project):
        task = _task(project)
        _evidence(task, 50)

        progress_reconciler.sync_task_from_evidence(project.id, task.id)
        before = _reload(task).to_dict()
        result = progress_reconciler.sync_task_from_evidence(project.id, task.id)

        assert result.changed is False
        assert _reload(task).to_dict() == before

    def test_sync_overwrites_manual_values(self, project):
        task = _task(project)
        _evidence(task, 30)
        progress_reconciler.apply_manual_edit(
            project.id, task.id, {"status": "completed", "completion_percentage": 100},
        )

        result = progress_reconciler.sync_task_from_evidence(project.id, task.id)

        assert result.previous_status == "completed"
        assert result.item["status"] == "in_progress"
        assert result.item["completion_percentage"] == 30
        assert result.item["completed_at"] is None

    def test_sync_without_evidence_resets_to_not_started(self, project):
        task = _task(project, status="in_progress", pct=70)

        result = progress_reconciler.sync_task_from_evidence(project.id, task.id)

        assert result.item["status"] == "not_started"
        assert result.item["completion_percentage"] == 0

    def test_pending_evidence_does_not_count(self, project):
        task = _task(project)
        _evidence(task, 80, status="pending")

        result = progress_reconciler.sync_task_from_evidence(project.id, task.id)

        assert result.changed is False
        assert result.item["completion_percentage"] == 0

    def test_end_to_end_40_then_100(self, project, sent_emails):
        phase = _phase(project)
        task = _task(project, phase)

        _evidence(task, 40)
        result = progress_reconciler.sync_task_from_evidence(project.id, task.id)
        assert (result.item["status"], result.item["completion_percentage"]) == ("in_progress", 40)
        assert result.item["completed_at"] is None
        assert result.cascaded is False

        _evidence(task, 60)
        result = progress_reconciler.sync_task_from_evidence(project.id, task.id)
        assert (result.item["status"], result.item["completion_percentage"]) == ("completed", 100)
        assert result.item["completed_at"] is not None
        assert result.cascaded is True
        assert result.phase["status"] == "completed"
        assert result.phase["completed_at"] is not None
        assert sent_emails() == ["task_completed", "phase_completed"]

    def test_unknown_task_raises_not_found(self, project):
        with pytest.raises(NotFoundError):
            progress_reconciler.sync_task_from_evidence(project.id, "missing")

    def test_phase_is_not_a_task(self, project):
        phase = _phase(project)
        with pytest.raises(NotFoundError):
            progress_reconciler.sync_task_from_evidence(project.id, phase.id)

    def test_task_is_scoped_to_its_project(self, project):
        task = _task(project)
        with pytest.raises(NotFoundError):
            progress_reconciler.sync_task_from_evidence(project.id + 1, task.id)


# ═════════════════════════════════════════════════════════════════════════════
# Manual edit
# ═════════════════════════════════════════════════════════════════════════════


class TestManualEdit:
    def test_fields_are_stored_verbatim(self, project):
        task = _task(project)
        _evidence(task, 10)

        result = progress_reconciler.apply_manual_edit(
            project.id, task.id, {"status": "in_progress", "completion_percentage": 60},
        )

        assert result.item["status"] == "in_progress"
        assert result.item["completion_percentage"] == 60
        # a later evidence read does not change anything without a sync
        assert len(EvidenceStore.list_for_task(project.id, task.id)) == 1
        stored = _reload(task)
        assert (stored.status, stored.completion_percentage) == ("in_progress", 60)

    def test_partial_edit_keeps_other_field(self, project):
        task = _task(project, status="in_progress", pct=25)

        result = progress_reconciler.apply_manual_edit(project.id, task.id, {"status": "on_hold"})

        assert result.item["status"] == "on_hold"
        assert result.item["completion_percentage"] == 25

    def test_completed_at_set_and_cleared(self, project):
        task = _task(project)

        done = progress_reconciler.apply_manual_edit(project.id, task.id, {"status": "completed"})
        assert done.item["completed_at"] is not None

        again = progress_reconciler.apply_manual_edit(
            project.id, task.id, {"completion_percentage": 100},
        )
        assert again.item["completed_at"] == done.item["completed_at"]

        reopened = progress_reconciler.apply_manual_edit(
            project.id, task.id, {"status": "in_progress"},
        )
        assert reopened.item["completed_at"] is None

    def test_completion_sends_one_task_email(self, project, sent_emails):
        task = _task(project)

        progress_reconciler.apply_manual_edit(project.id, task.id, {"status": "completed"})
        progress_reconciler.apply_manual_edit(project.id, task.id, {"completion_percentage": 100})

        assert sent_emails() == ["task_completed"]

    @pytest.mark.parametrize("fields", [
        {},
        {"name": "renamed"},
        {"status": "done"},
        {"completion_percentage": 101},
        {"completion_percentage": -1},
        {"completion_percentage": 12.5},
        {"completion_percentage": "50"},
        {"completion_percentage": True},
    ])
    def test_invalid_fields_rejected(self, project, fields):
        task = _task(project, status="in_progress", pct=20)

        with pytest.raises(ValidationError):
            progress_reconciler.apply_manual_edit(project.id, task.id, fields)

        stored = _reload(task)
        assert (stored.status, stored.completion_percentage) == ("in_progress", 20)

    def test_whole_float_percentage_accepted(self, project):
        task = _task(project)
        result = progress_reconciler.apply_manual_edit(
            project.id, task.id, {"completion_percentage": 55.0},
        )
        assert result.item["completion_percentage"] == 55


# ═════════════════════════════════════════════════════════════════════════════
# Phase cascade
# ═════════════════════════════════════════════════════════════════════════════


class TestCascade:
    def test_three_tasks_cascade_exactly_once(self, project, monkeypatch):
        calls = []
        monkeypatch.setattr(NotificationService, "notify_phase_completed",
                            staticmethod(lambda phase: calls.append(phase.id)))
        phase = _phase(project)
        tasks = [_task(project, phase, name=f"T{i}") for i in range(3)]

        for task in tasks[:2]:
            result = progress_reconciler.apply_manual_edit(
                project.id, task.id, {"status": "completed", "completion_percentage": 100},
            )
            assert result.cascaded is False
        assert _reload(phase).status != "completed"
        assert result.evaluation.completed_tasks == 2
        assert result.evaluation.total_tasks == 3

        result = progress_reconciler.apply_manual_edit(
            project.id, tasks[2].id, {"status": "completed", "completion_percentage": 100},
        )

        assert result.cascaded is True
        stored = _reload(phase)
        assert stored.status == "completed"
        assert stored.completed_at is not None
        assert calls == [phase.id]

    def test_just_short_of_100_does_not_cascade(self, project, sent_emails):
        phase = _phase(project)
        task = _task(project, phase)
        for _ in range(3):
            _evidence(task, 33.3)

        result = progress_reconciler.sync_task_from_evidence(project.id, task.id)

        assert result.item["status"] == "in_progress"
        assert result.item["completion_percentage"] == 99
        assert result.item["completed_at"] is None
        assert result.cascaded is False
        assert _reload(phase).status == "not_started"
        assert sent_emails() == []

    def test_resync_does_not_recascade(self, project, sent_emails):
        phase = _phase(project)
        task = _task(project, phase)
        _evidence(task, 100)

        first = progress_reconciler.sync_task_from_evidence(project.id, task.id)
        completed_at = _reload(phase).completed_at
        second = progress_reconciler.sync_task_from_evidence(project.id, task.id)

        assert first.cascaded is True
        assert second.cascaded is False
        assert second.changed is False
        assert _reload(phase).completed_at == completed_at
        assert sent_emails().count("phase_completed") == 1

    def test_completed_phase_is_not_reopened(self, project):
        phase = _phase(project)
        task = _task(project, phase)
        progress_reconciler.apply_manual_edit(project.id, task.id, {"status": "completed"})

        progress_reconciler.apply_manual_edit(project.id, task.id, {"status": "in_progress"})

        assert _reload(phase).status == "completed"

    def test_task_without_phase_has_no_cascade(self, project):
        task = _task(project)
        result = progress_reconciler.apply_manual_edit(project.id, task.id, {"status": "completed"})
        assert result.phase is None
        assert result.evaluation is None
        assert result.cascaded is False

    def test_phase_percentage_is_untouched(self, project):
        phase = _phase(project)
        task = _task(project, phase)
        progress_reconciler.apply_manual_edit(project.id, task.id, {"status": "completed"})
        assert _reload(phase).completion_percentage == 0


# ═════════════════════════════════════════════════════════════════════════════
# Explicit phase completion
# ═════════════════════════════════════════════════════════════════════════════


class TestCompletePhase:
    def test_gate_denies_with_counts(self, project):
        phase = _phase(project)
        _task(project, phase, status="completed")
        _task(project, phase)

        with pytest.raises(InvalidTransitionError) as exc_info:
            progress_reconciler.complete_phase(project.id, phase.id)

        assert exc_info.value.total_tasks == 2
        assert exc_info.value.completed_tasks == 1
        assert _reload(phase).status == "not_started"

    def test_empty_phase_cannot_be_completed(self, project):
        phase = _phase(project)
        with pytest.raises(InvalidTransitionError) as exc_info:
            progress_reconciler.complete_phase(project.id, phase.id)
        assert exc_info.value.details == {"total_tasks": 0, "completed_tasks": 0}

    def test_completes_when_all_tasks_done(self, project, sent_emails):
        phase = _phase(project)
        _task(project, phase, status="completed", pct=100)

        result = progress_reconciler.complete_phase(project.id, phase.id)

        assert result.changed is True
        assert result.item["status"] == "completed"
        assert sent_emails() == ["phase_completed"]

    def test_already_completed_is_a_no_op(self, project, sent_emails):
        phase = _phase(project)
        _task(project, phase, status="completed", pct=100)
        progress_reconciler.complete_phase(project.id, phase.id)

        result = progress_reconciler.complete_phase(project.id, phase.id)

        assert result.changed is False
        assert sent_emails() == ["phase_completed"]

    def test_can_complete_phase_is_read_only(self, project):
        phase = _phase(project)
        _task(project, phase, status="completed")

        evaluation = progress_reconciler.can_complete_phase(project.id, phase.id)

        assert evaluation.can_complete is True
        assert _reload(phase).status == "not_started"

    def test_task_id_is_not_a_phase(self, project):
        task = _task(project)
        with pytest.raises(NotFoundError):
            progress_reconciler.can_complete_phase(project.id, task.id)


# ═════════════════════════════════════════════════════════════════════════════
# Failure semantics
# ═════════════════════════════════════════════════════════════════════════════


class TestFailures:
    def test_evidence_store_failure_leaves_task_untouched(self, project, monkeypatch):
        task = _task(project, status="in_progress", pct=60)
        _evidence(task, 10)

        def _boom(*args, **kwargs):
            raise OperationalError("SELECT evidence", {}, Exception("connection lost"))

        monkeypatch.setattr(db.session, "execute", _boom)
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            progress_reconciler.sync_task_from_evidence(project.id, task.id)
        monkeypatch.undo()

        assert exc_info.value.store == "evidence_store"
        stored = _reload(task)
        assert (stored.status, stored.completion_percentage) == ("in_progress", 60)

    def test_notification_failure_keeps_state(self, project, monkeypatch, caplog):
        def _broken(task):
            raise RuntimeError("mail relay down")

        monkeypatch.setattr(NotificationService, "notify_task_completed", staticmethod(_broken))
        task = _task(project)

        with caplog.at_level(logging.WARNING, logger="buildtrack.services.progress_reconciler"):
            result = progress_reconciler.apply_manual_edit(
                project.id, task.id, {"status": "completed", "completion_percentage": 100},
            )

        assert result.item["status"] == "completed"
        assert _reload(task).status == "completed"
        assert "notification failed" in caplog.text

    def test_phase_notification_failure_keeps_cascade(self, project, monkeypatch):
        def _broken(phase):
            raise RuntimeError("mail relay down")

        monkeypatch.setattr(NotificationService, "notify_phase_completed", staticmethod(_broken))
        phase = _phase(project)
        task = _task(project, phase)

        result = progress_reconciler.apply_manual_edit(project.id, task.id, {"status": "completed"})

        assert result.cascaded is True
        assert _reload(phase).status == "completed"

    def test_disabled_notifications_send_nothing(self, app, project, sent_emails):
        app.config["COMPLETION_EMAILS_ENABLED"] = False
        try:
            task = _task(project)
            progress_reconciler.apply_manual_edit(project.id, task.id, {"status": "completed"})
        finally:
            app.config["COMPLETION_EMAILS_ENABLED"] = True
        assert sent_emails() == []


# ═════════════════════════════════════════════════════════════════════════════
# Orphaned tasks
# ═════════════════════════════════════════════════════════════════════════════


class TestOrphans:
    def _orphan(self, project):
        task = WorkItem(project_id=project.id, name="Lost", parent_phase_id="gone")
        db.session.add(task)
        db.session.commit()
        return task

    def test_orphan_is_flagged_and_logged(self, project, caplog):
        task = self._orphan(project)

        with caplog.at_level(logging.ERROR, logger="buildtrack.services.progress_reconciler"):
            result = progress_reconciler.apply_manual_edit(
                project.id, task.id, {"status": "completed"},
            )

        assert result.orphaned is True
        assert result.item["status"] == "completed"
        corruption = [r for r in caplog.records if getattr(r, "event_type", None) == "data_corruption"]
        assert corruption and corruption[0].work_item_id == task.id

    def test_cleanup_removes_orphans_and_evidence(self, project):
        phase = _phase(project)
        kept = _task(project, phase)
        standalone = _task(project, name="Site survey")
        orphan = self._orphan(project)
        _evidence(orphan, 20)
        _evidence(kept, 30)
        orphan_id = orphan.id

        removed = progress_reconciler.cleanup_orphaned_tasks(project.id)

        assert removed == [orphan_id]
        db.session.expire_all()
        assert db.session.get(WorkItem, (project.id, orphan_id)) is None
        assert db.session.get(WorkItem, (project.id, kept.id)) is not None
        assert db.session.get(WorkItem, (project.id, standalone.id)) is not None
        assert EvidenceStore.list_for_task(project.id, orphan_id) == []
        assert len(EvidenceStore.list_for_task(project.id, kept.id)) == 1

    def test_cleanup_without_orphans(self, project):
        _task(project, _phase(project))
        assert progress_reconciler.cleanup_orphaned_tasks(project.id) == []
