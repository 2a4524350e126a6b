"""Work-item lifecycle: create, list, delete (phase deletes cascade)."""

import pytest

from buildtrack.core.exceptions import NotFoundError, ValidationError
from buildtrack.models import db
from buildtrack.models.work_item import WorkItem
from buildtrack.services import evidence_service, work_item_service


def _create(project, **data):
    data.setdefault("name", "Item")
    return work_item_service.create_work_item(project.id, data)


def _exists(project, item_id) -> bool:
    db.session.expire_all()
    return db.session.get(WorkItem, (project.id, item_id)) is not None


class TestCreate:
    def test_phase_and_task(self, project):
        phase = _create(project, name="Foundation", is_phase=True)
        task = _create(project, name="Excavate", parent_phase_id=phase.id,
                       estimated_cost="12500.50", start_date="2026-03-01")

        assert phase.is_phase is True
        assert phase.parent_phase_id is None
        assert task.parent_phase_id == phase.id
        assert task.status == "not_started"
        assert task.to_dict()["estimated_cost"] == 12500.5
        assert task.to_dict()["start_date"] == "2026-03-01"

    def test_task_created_completed_gets_timestamp(self, project):
        task = _create(project, status="completed", completion_percentage=100)
        assert task.completed_at is not None

    def test_list_orders_phases_first(self, project):
        task = _create(project, name="Standalone")
        phase = _create(project, name="Roofing", is_phase=True)

        ids = [i.id for i in work_item_service.list_work_items(project.id)]

        assert ids == [phase.id, task.id]

    def test_list_by_phase(self, project):
        phase = _create(project, is_phase=True)
        child = _create(project, parent_phase_id=phase.id)
        _create(project, name="Other")

        children = work_item_service.list_work_items(project.id, phase_id=phase.id)

        assert [c.id for c in children] == [child.id]

    @pytest.mark.parametrize("data", [
        {"name": ""},
        {"name": "x" * 201},
        {"status": "finished"},
        {"is_phase": True, "parent_phase_id": "p1"},
        {"is_phase": True, "status": "completed"},
        {"parent_phase_id": "missing"},
        {"completion_percentage": 150},
        {"completion_percentage": 10.5},
        {"estimated_cost": "lots"},
        {"start_date": "next tuesday"},
    ])
    def test_validation(self, project, data):
        with pytest.raises(ValidationError):
            _create(project, **data)

    def test_parent_must_be_a_phase(self, project):
        task = _create(project)
        with pytest.raises(ValidationError):
            _create(project, parent_phase_id=task.id)

    def test_unknown_project(self):
        with pytest.raises(NotFoundError):
            work_item_service.create_work_item(999, {"name": "Ghost"})


class TestDelete:
    def test_delete_phase_removes_tasks_and_evidence(self, project):
        phase = _create(project, is_phase=True)
        t1 = _create(project, parent_phase_id=phase.id)
        t2 = _create(project, parent_phase_id=phase.id)
        evidence_service.record_evidence({"project_id": project.id, "task_id": t1.id})
        phase_id, t1_id, t2_id = phase.id, t1.id, t2.id

        result = work_item_service.delete_work_item(project.id, phase_id)

        assert sorted(result["deleted"]) == sorted([phase_id, t1_id, t2_id])
        assert result["evidence_deleted"] == 1
        assert not _exists(project, phase_id)
        assert not _exists(project, t1_id)
        assert evidence_service.list_evidence_for_task(project.id, t1_id) == []

    def test_deleting_last_open_task_cascades_phase(self, project, sent_emails):
        phase = _create(project, is_phase=True)
        _create(project, parent_phase_id=phase.id, status="completed", completion_percentage=100)
        open_task = _create(project, parent_phase_id=phase.id)
        phase_id = phase.id

        result = work_item_service.delete_work_item(project.id, open_task.id)

        assert result["phase"]["cascaded"] is True
        db.session.expire_all()
        assert db.session.get(WorkItem, (project.id, phase_id)).status == "completed"
        assert sent_emails() == ["phase_completed"]

    def test_deleting_only_task_leaves_empty_phase_open(self, project):
        phase = _create(project, is_phase=True)
        task = _create(project, parent_phase_id=phase.id)

        result = work_item_service.delete_work_item(project.id, task.id)

        assert result["phase"]["cascaded"] is False
        assert result["phase"]["evaluation"]["total_tasks"] == 0

    def test_delete_unknown(self, project):
        with pytest.raises(NotFoundError):
            work_item_service.delete_work_item(project.id, "missing")
