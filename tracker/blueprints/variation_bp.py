"""
Variation (change-control) blueprint.

Endpoint groups:
  Project views        GET/POST /api/v1/projects/<pid>/variations
                       GET      /api/v1/projects/<pid>/variations/summary
                       GET      /api/v1/projects/<pid>/milestones/dependencies
  Variation aggregate  GET/PUT/DELETE /api/v1/variations/<id>
                       PUT      /api/v1/variations/<id>/progress
                       GET      /api/v1/variations/<id>/certificate
  Impact ledger        POST     /api/v1/variations/<id>/milestones
                       PUT      /api/v1/variations/<id>/milestones/sync
                       PUT/DELETE /api/v1/variation-milestones/<row_id>
                       POST     /api/v1/variations/<id>/deliverables
                       DELETE   /api/v1/variation-deliverables/<id>
  State machine        POST     /api/v1/variations/<id>/submit|sign|reject|reset|apply
  Milestone views      GET      /api/v1/milestones/<mid>/baseline-history
                       GET      /api/v1/milestones/<mid>/variations

The caller comes from X-User-Id (see tracker.auth); capabilities come from
the caller's project role.  Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

import tracker.services.impact_ledger as ledger
import tracker.services.variation_service as vs
import tracker.services.variation_workflow as workflow
from tracker.auth import current_user_id, is_auth_enabled
from tracker.blueprints import paginate_items
from tracker.core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PartialApplicationError,
    PermissionDenied,
    StoreError,
    ValidationError,
)
from tracker.models.variation import VariationDeliverable, VariationMilestone
from tracker.services import apply_engine
from tracker.services.helpers.lookups import get_or_404, get_variation
from tracker.services.variation_policy import policy_for
from tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

variation_bp = Blueprint("variation", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@variation_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@variation_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@variation_bp.errorhandler(InvalidStateError)
def _handle_invalid_state(error: InvalidStateError):
    return api_error(E.CONFLICT_STATE, str(error), details=error.details)


@variation_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(
        E.CONFLICT_DUPLICATE, str(error), details={"field": error.field, "value": error.value},
    )


@variation_bp.errorhandler(PermissionDenied)
def _handle_forbidden(error: PermissionDenied):
    return api_error(E.FORBIDDEN, str(error), details={"action": error.action, "role": error.role})


@variation_bp.errorhandler(PartialApplicationError)
def _handle_partial_application(error: PartialApplicationError):
    return api_error(E.PARTIAL_APPLICATION, str(error), details=error.details)


@variation_bp.errorhandler(StoreError)
def _handle_store(error: StoreError):
    return api_error(E.DATABASE, "Database error")


@variation_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in variation_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _policy(project_id: int):
    """Capability policy of the caller; None (trusted) only when auth is off and no user is known."""
    user_id = current_user_id()
    if user_id is None and not is_auth_enabled():
        return None
    return policy_for(project_id, user_id)


def _variation_policy(variation_id: int):
    return _policy(get_variation(variation_id).project_id)


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ═════════════════════════════════════════════════════════════════════════
# Project views
# ═════════════════════════════════════════════════════════════════════════


@variation_bp.route("/projects/<int:project_id>/variations", methods=["GET"])
def list_variations(project_id):
    """List variations of a project, newest first, with milestone_count.

    Query params: status (optional filter), limit, offset
    """
    items = vs.get_all_with_stats(project_id)
    status = request.args.get("status")
    if status:
        items = [v for v in items if v["status"] == status]
    page, total = paginate_items(items)
    return jsonify({"items": page, "total": total}), 200


@variation_bp.route("/projects/<int:project_id>/variations", methods=["POST"])
def create_variation(project_id):
    """Create a draft variation.

    Body: { title, variation_type?, description?, reason?, contract_terms_reference?, form_data? }
    Returns: variation dict (201).
    """
    data = _body()
    variation = vs.create_variation(project_id, data, current_user_id(), policy=_policy(project_id))
    return jsonify(variation), 201


@variation_bp.route("/projects/<int:project_id>/variations/summary", methods=["GET"])
def variation_summary(project_id):
    return jsonify(vs.get_summary(project_id)), 200


@variation_bp.route("/projects/<int:project_id>/milestones/dependencies", methods=["GET"])
def milestones_with_dependencies(project_id):
    return jsonify({"items": vs.get_milestones_with_dependencies(project_id)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Variation aggregate
# ═════════════════════════════════════════════════════════════════════════


@variation_bp.route("/variations/<int:variation_id>", methods=["GET"])
def get_variation_detail(variation_id):
    """Variation with affected milestones, deliverable changes and signer profiles."""
    return jsonify(vs.get_with_details(variation_id)), 200


@variation_bp.route("/variations/<int:variation_id>", methods=["PUT"])
def update_variation(variation_id):
    """Edit header fields of a draft variation."""
    policy = _variation_policy(variation_id)
    return jsonify(vs.update_variation(variation_id, _body(), policy=policy)), 200


@variation_bp.route("/variations/<int:variation_id>", methods=["DELETE"])
def delete_variation(variation_id):
    """Delete a draft, submitted or rejected variation with its ledger."""
    policy = _variation_policy(variation_id)
    vs.delete_draft_variation(variation_id, policy=policy)
    return jsonify({"deleted": True}), 200


@variation_bp.route("/variations/<int:variation_id>/progress", methods=["PUT"])
def save_progress(variation_id):
    """Wizard auto-save.

    Body: { form_data: {...}, step: int }
    """
    data = _body()
    policy = _variation_policy(variation_id)
    variation = vs.save_form_progress(variation_id, data.get("form_data"), data.get("step"), policy=policy)
    return jsonify(variation), 200


@variation_bp.route("/variations/<int:variation_id>/certificate", methods=["GET"])
def get_certificate(variation_id):
    return jsonify(vs.get_certificate(variation_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Impact ledger
# ═════════════════════════════════════════════════════════════════════════


@variation_bp.route("/variations/<int:variation_id>/milestones", methods=["POST"])
def add_affected_milestone(variation_id):
    """Body: { milestone_id, change_rationale? }"""
    data = _body()
    if data.get("milestone_id") in (None, ""):
        return api_error(E.VALIDATION_REQUIRED, "milestone_id is required")
    policy = _variation_policy(variation_id)
    row = ledger.add(variation_id, data["milestone_id"], data.get("change_rationale"), policy=policy)
    return jsonify(row), 201


@variation_bp.route("/variations/<int:variation_id>/milestones/sync", methods=["PUT"])
def sync_affected_milestones(variation_id):
    """Replace the ledger with the wizard draft.

    Body: { affected_milestones: [{ milestone_id, new_baseline_cost?, new_baseline_start?,
                                    new_baseline_end?, change_rationale? }, ...] }
    """
    data = _body()
    policy = _variation_policy(variation_id)
    rows = ledger.sync_from_draft(variation_id, data.get("affected_milestones") or [], policy=policy)
    return jsonify({"items": rows}), 200


@variation_bp.route("/variation-milestones/<int:row_id>", methods=["PUT"])
def update_affected_milestone(row_id):
    """Body: { field, value }"""
    data = _body()
    field = data.get("field")
    if not field:
        return api_error(E.VALIDATION_REQUIRED, "field is required")
    row = get_or_404(VariationMilestone, row_id)
    policy = _variation_policy(row.variation_id)
    return jsonify(ledger.update(row_id, field, data.get("value"), policy=policy)), 200


@variation_bp.route("/variation-milestones/<int:row_id>", methods=["DELETE"])
def remove_affected_milestone(row_id):
    row = get_or_404(VariationMilestone, row_id)
    policy = _variation_policy(row.variation_id)
    ledger.remove(row_id, policy=policy)
    return jsonify({"deleted": True}), 200


@variation_bp.route("/variations/<int:variation_id>/deliverables", methods=["POST"])
def add_deliverable_change(variation_id):
    """Body: { change_type, deliverable_ref?, variation_milestone_id?, original_data?, new_data?, removal_reason? }"""
    data = _body()
    policy = _variation_policy(variation_id)
    return jsonify(ledger.add_deliverable_change(variation_id, data, policy=policy)), 201


@variation_bp.route("/variation-deliverables/<int:change_id>", methods=["DELETE"])
def remove_deliverable_change(change_id):
    change = get_or_404(VariationDeliverable, change_id)
    policy = _variation_policy(change.variation_id)
    ledger.remove_deliverable_change(change_id, policy=policy)
    return jsonify({"deleted": True}), 200


# ═════════════════════════════════════════════════════════════════════════
# State machine
# ═════════════════════════════════════════════════════════════════════════


@variation_bp.route("/variations/<int:variation_id>/submit", methods=["POST"])
def submit_variation(variation_id):
    """Body: { impact_summary }"""
    data = _body()
    policy = _variation_policy(variation_id)
    return jsonify(workflow.submit_for_approval(variation_id, data.get("impact_summary"), policy=policy)), 200


@variation_bp.route("/variations/<int:variation_id>/sign", methods=["POST"])
def sign_variation(variation_id):
    """Body: { role: "supplier" | "customer" }

    The second signature applies the variation in the same request.
    """
    data = _body()
    role = data.get("role")
    if not role:
        return api_error(E.VALIDATION_REQUIRED, "role is required")
    policy = _variation_policy(variation_id)
    return jsonify(workflow.sign_variation(variation_id, role, current_user_id(), policy=policy)), 200


@variation_bp.route("/variations/<int:variation_id>/reject", methods=["POST"])
def reject_variation(variation_id):
    """Body: { reason }"""
    data = _body()
    policy = _variation_policy(variation_id)
    variation = workflow.reject_variation(variation_id, current_user_id(), data.get("reason"), policy=policy)
    return jsonify(variation), 200


@variation_bp.route("/variations/<int:variation_id>/reset", methods=["POST"])
def reset_variation(variation_id):
    policy = _variation_policy(variation_id)
    return jsonify(workflow.reset_to_draft(variation_id, policy=policy)), 200


@variation_bp.route("/variations/<int:variation_id>/apply", methods=["POST"])
def apply_variation(variation_id):
    """Re-run the apply of an approved variation (after an earlier failure)."""
    policy = _variation_policy(variation_id)
    return jsonify(apply_engine.apply_variation(variation_id, policy=policy)), 200


# ═════════════════════════════════════════════════════════════════════════
# Milestone views
# ═════════════════════════════════════════════════════════════════════════


@variation_bp.route("/milestones/<int:milestone_id>/baseline-history", methods=["GET"])
def milestone_baseline_history(milestone_id):
    return jsonify({"items": vs.get_milestone_baseline_history(milestone_id)}), 200


@variation_bp.route("/milestones/<int:milestone_id>/variations", methods=["GET"])
def milestone_variations(milestone_id):
    return jsonify({
        "items": vs.get_variations_for_milestone(milestone_id),
        "has_pending_variation": vs.has_pending_variation(milestone_id),
    }), 200
