"""
Progress blueprint — work items, evidence and the phase completion gate.

Endpoint groups:
  Work items          GET/POST /api/v1/projects/<pid>/work-items
                      DELETE   /api/v1/projects/<pid>/work-items/<wid>
  Task progress       PATCH    /api/v1/projects/<pid>/tasks/<tid>
                      POST     /api/v1/projects/<pid>/tasks/<tid>/sync
  Phase gate          GET      /api/v1/projects/<pid>/phases/<phid>/can-complete
                      POST     /api/v1/projects/<pid>/phases/<phid>/complete
  Project             GET      /api/v1/projects/<pid>/status
                      POST     /api/v1/projects/<pid>/cleanup-orphans
                      GET      /api/v1/projects/<pid>/evidence/pending
  Evidence            POST     /api/v1/evidence
                      POST     /api/v1/evidence/<gid>/<eid>/confirm
                      POST     /api/v1/evidence/<gid>/<eid>/reject
                      DELETE   /api/v1/evidence/<gid>/<eid>

Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from buildtrack.blueprints import paginate_query
from buildtrack.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from buildtrack.services import evidence_service, progress_reconciler, work_item_service
from buildtrack.services.project_status import summarize_project
from buildtrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

progress_bp = Blueprint("progress", __name__, url_prefix="/api/v1")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ── Error handlers ────────────────────────────────────────────────────────────


@progress_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@progress_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@progress_bp.errorhandler(InvalidTransitionError)
def _handle_invalid_transition(error: InvalidTransitionError):
    return api_error(E.INVALID_TRANSITION, str(error), details=error.details)


@progress_bp.errorhandler(UpstreamUnavailableError)
def _handle_upstream(error: UpstreamUnavailableError):
    logger.warning("Store unavailable in endpoint=%s: %s", request.endpoint, error)
    return api_error(E.UPSTREAM_UNAVAILABLE, f"{error.store} is unavailable, retry later",
                     details={"store": error.store, "operation": error.operation})


@progress_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in progress_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Work items
# ═════════════════════════════════════════════════════════════════════════


@progress_bp.route("/projects/<int:project_id>/work-items", methods=["GET"])
def list_work_items(project_id: int):
    """List phases and tasks. ``?phase_id=`` narrows to one phase's tasks."""
    query = work_item_service.work_items_query(
        project_id, phase_id=request.args.get("phase_id") or None,
    )
    page, total = paginate_query(query)
    return jsonify({"items": [i.to_dict() for i in page], "total": total}), 200


@progress_bp.route("/projects/<int:project_id>/work-items", methods=["POST"])
def create_work_item(project_id: int):
    item = work_item_service.create_work_item(project_id, _json_body())
    return jsonify(item.to_dict()), 201


@progress_bp.route("/projects/<int:project_id>/work-items/<item_id>", methods=["DELETE"])
def delete_work_item(project_id: int, item_id: str):
    """Delete a task, or a phase together with its tasks."""
    return jsonify(work_item_service.delete_work_item(project_id, item_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Task progress
# ═════════════════════════════════════════════════════════════════════════


@progress_bp.route("/projects/<int:project_id>/tasks/<task_id>", methods=["PATCH"])
def update_task(project_id: int, task_id: str):
    """Manual status / completion_percentage edit."""
    result = progress_reconciler.apply_manual_edit(project_id, task_id, _json_body())
    return jsonify(result.to_dict()), 200


@progress_bp.route("/projects/<int:project_id>/tasks/<task_id>/sync", methods=["POST"])
def sync_task(project_id: int, task_id: str):
    """Re-derive the task from its evidence."""
    result = progress_reconciler.sync_task_from_evidence(project_id, task_id)
    return jsonify(result.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Phase completion gate
# ═════════════════════════════════════════════════════════════════════════


@progress_bp.route("/projects/<int:project_id>/phases/<phase_id>/can-complete", methods=["GET"])
def can_complete_phase(project_id: int, phase_id: str):
    evaluation = progress_reconciler.can_complete_phase(project_id, phase_id)
    return jsonify(evaluation.to_dict()), 200


@progress_bp.route("/projects/<int:project_id>/phases/<phase_id>/complete", methods=["POST"])
def complete_phase(project_id: int, phase_id: str):
    result = progress_reconciler.complete_phase(project_id, phase_id)
    return jsonify(result.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Project
# ═════════════════════════════════════════════════════════════════════════


@progress_bp.route("/projects/<int:project_id>/status", methods=["GET"])
def project_status(project_id: int):
    return jsonify(summarize_project(project_id)), 200


@progress_bp.route("/projects/<int:project_id>/cleanup-orphans", methods=["POST"])
def cleanup_orphans(project_id: int):
    work_item_service.list_work_items(project_id)  # 404 for unknown projects
    removed = progress_reconciler.cleanup_orphaned_tasks(project_id)
    return jsonify({"removed": removed, "count": len(removed)}), 200


@progress_bp.route("/projects/<int:project_id>/evidence/pending", methods=["GET"])
def pending_evidence(project_id: int):
    records = evidence_service.list_pending_for_project(project_id)
    return jsonify({"items": [r.to_dict() for r in records], "total": len(records)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Evidence
# ═════════════════════════════════════════════════════════════════════════


@progress_bp.route("/evidence", methods=["POST"])
def record_evidence():
    record = evidence_service.record_evidence(_json_body())
    return jsonify(record.to_dict()), 201


@progress_bp.route("/evidence/<group_id>/<evidence_id>/confirm", methods=["POST"])
def confirm_evidence(group_id: str, evidence_id: str):
    """Body: ``{"percentage": 40, "confirmed_by": "..."}``"""
    data = _json_body()
    if data.get("percentage") is None:
        raise ValidationError("percentage is required", details={"percentage": "required"})
    record, result = evidence_service.confirm_evidence(
        group_id, evidence_id, data["percentage"], confirmed_by=data.get("confirmed_by"),
    )
    return jsonify({"evidence": record.to_dict(), "task": result.to_dict()}), 200


@progress_bp.route("/evidence/<group_id>/<evidence_id>/reject", methods=["POST"])
def reject_evidence(group_id: str, evidence_id: str):
    record, result = evidence_service.reject_evidence(group_id, evidence_id)
    return jsonify({"evidence": record.to_dict(), "task": result.to_dict()}), 200


@progress_bp.route("/evidence/<group_id>/<evidence_id>", methods=["DELETE"])
def delete_evidence(group_id: str, evidence_id: str):
    result = evidence_service.delete_evidence(group_id, evidence_id)
    return jsonify({"task": result.to_dict()}), 200
