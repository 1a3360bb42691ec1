"""
Variation approval state machine.

    draft → submitted → awaiting_customer | awaiting_supplier → approved → applied
    any state but applied → rejected → draft (reset)

Every transition is checked against VARIATION_TRANSITIONS, logged at INFO
with from/to status, and committed before returning the aggregate.  The
second signature triggers the apply engine in the same call; an apply
failure is logged and leaves the variation approved and retryable.
"""

import logging
from datetime import datetime, timezone

from tracker.core.exceptions import InvalidStateError, StoreError, ValidationError
from tracker.models.variation import (
    SIGNABLE_STATUSES,
    SIGNER_ROLES,
    STATUS_APPLIED,
    STATUS_APPROVED,
    STATUS_AWAITING_CUSTOMER,
    STATUS_AWAITING_SUPPLIER,
    STATUS_DRAFT,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    validate_variation_transition,
)
from tracker.services import apply_engine
from tracker.services.helpers.lookups import commit_or_raise, get_variation, require_status
from tracker.services.variation_policy import (
    ACTION_REJECT,
    ACTION_RESET,
    ACTION_SUBMIT,
    enforce,
    sign_action,
)

logger = logging.getLogger(__name__)

SUBMITTABLE_STATUSES = frozenset({STATUS_DRAFT, STATUS_SUBMITTED})


def _text(value, field: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: "invalid"})
    return value.strip()


def _transition(variation, new_status: str, attempted: str) -> str:
    old = variation.status
    if not validate_variation_transition(old, new_status):
        raise InvalidStateError(
            resource="Variation", resource_id=variation.id, status=old, attempted=attempted,
        )
    variation.status = new_status
    return old


def _log_transition(variation, old: str, **extra) -> None:
    logger.info(
        "Variation %s: %s → %s", variation.variation_ref, old, variation.status,
        extra={
            "variation_id": variation.id,
            "project_id": variation.project_id,
            "variation_ref": variation.variation_ref,
            "from_status": old,
            "to_status": variation.status,
            **extra,
        },
    )


def compute_totals(rows) -> tuple:
    """Return (cost impact, days impact) over the ledger rows.

    Missing costs count as 0; days only count where both end dates are known.
    """
    cost = sum((row.cost_delta for row in rows), 0)
    days = sum(row.days_delta for row in rows)
    return cost, days


def submit_for_approval(variation_id: int, impact_summary: str, *, policy=None) -> dict:
    """Validate, recompute totals and move the variation to ``submitted``.

    Re-submitting an already submitted variation refreshes summary and totals.
    """
    variation = get_variation(variation_id, for_update=True)
    enforce(policy, ACTION_SUBMIT)
    require_status(variation, SUBMITTABLE_STATUSES, "submit")

    rows = variation.affected_milestones.all()
    summary = _text(impact_summary, "impact_summary")
    errors = {}
    if not rows:
        errors["affected_milestones"] = "at least one affected milestone is required"
    if not summary:
        errors["impact_summary"] = "required"
    if errors:
        raise ValidationError("Variation is not ready for submission", details=errors)

    cost, days = compute_totals(rows)
    old = _transition(variation, STATUS_SUBMITTED, "submit")
    variation.impact_summary = summary
    variation.total_cost_impact = cost
    variation.total_days_impact = days
    commit_or_raise("Variation", variation.id)

    _log_transition(variation, old)
    return variation.to_dict()


def sign_variation(variation_id: int, role: str, user_id: int, *, policy=None) -> dict:
    """Record the supplier or customer signature.

    The status becomes ``approved`` once both parties have signed, otherwise
    ``awaiting_customer`` / ``awaiting_supplier``.  Re-signing by the same
    party overwrites signer and timestamp.
    """
    if not isinstance(role, str) or role not in SIGNER_ROLES:
        raise ValidationError(
            f"role must be one of {sorted(SIGNER_ROLES)}", details={"role": "invalid"},
        )
    if user_id is None:
        raise ValidationError("A signer is required", details={"user_id": "required"})

    variation = get_variation(variation_id, for_update=True)
    enforce(policy, sign_action(role))
    require_status(variation, SIGNABLE_STATUSES, f"sign as {role}")

    now = datetime.now(timezone.utc)
    if role == "supplier":
        variation.supplier_signed_by = user_id
        variation.supplier_signed_at = now
        other_signed = variation.customer_signed_at is not None
        waiting = STATUS_AWAITING_CUSTOMER
    else:
        variation.customer_signed_by = user_id
        variation.customer_signed_at = now
        other_signed = variation.supplier_signed_at is not None
        waiting = STATUS_AWAITING_SUPPLIER

    old = _transition(variation, STATUS_APPROVED if other_signed else waiting, f"sign as {role}")
    commit_or_raise("Variation", variation.id)
    _log_transition(variation, old, signer_role=role, user_id=user_id)

    if variation.status != STATUS_APPROVED:
        return variation.to_dict()

    try:
        return apply_engine.apply_variation(variation.id)
    except (StoreError, InvalidStateError):
        logger.exception(
            "Auto-apply failed; variation stays approved",
            extra={"variation_id": variation_id},
        )
    return get_variation(variation_id).to_dict()


def reject_variation(variation_id: int, user_id: int | None, reason: str, *, policy=None) -> dict:
    """Reject from any state except ``applied``; a reason is mandatory."""
    reason = _text(reason, "reason")
    if not reason:
        raise ValidationError("A rejection reason is required", details={"reason": "required"})

    variation = get_variation(variation_id, for_update=True)
    enforce(policy, ACTION_REJECT)
    if variation.status == STATUS_APPLIED:
        raise InvalidStateError(
            resource="Variation", resource_id=variation.id, status=variation.status, attempted="reject",
        )

    old = _transition(variation, STATUS_REJECTED, "reject")
    variation.rejected_by = user_id
    variation.rejected_at = datetime.now(timezone.utc)
    variation.rejection_reason = reason
    commit_or_raise("Variation", variation.id)

    _log_transition(variation, old, user_id=user_id)
    return variation.to_dict()


def reset_to_draft(variation_id: int, *, policy=None) -> dict:
    """Bring a rejected variation back to draft, clearing signatures and rejection."""
    variation = get_variation(variation_id, for_update=True)
    enforce(policy, ACTION_RESET)
    require_status(variation, {STATUS_REJECTED}, "reset to draft")

    old = _transition(variation, STATUS_DRAFT, "reset to draft")
    variation.supplier_signed_by = None
    variation.supplier_signed_at = None
    variation.customer_signed_by = None
    variation.customer_signed_at = None
    variation.rejected_by = None
    variation.rejected_at = None
    variation.rejection_reason = None
    variation.form_step = 1
    commit_or_raise("Variation", variation.id)

    _log_transition(variation, old)
    return variation.to_dict()
