"""
Milestone impact ledger: the per-milestone rows of a variation.

Each row captures the milestone's agreed baseline at the time it was added
(original_*) next to the proposed values (new_*).  Rows and their
deliverable changes may only change while the variation is draft or
submitted.
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from tracker.core.exceptions import ConflictError, NotFoundError, ValidationError
from tracker.models import db
from tracker.models.project import Milestone
from tracker.models.variation import (
    DELIVERABLE_CHANGE_TYPES,
    EDITABLE_STATUSES,
    VariationDeliverable,
    VariationMilestone,
)
from tracker.services.helpers.lookups import (
    commit_or_raise,
    get_or_404,
    get_scoped,
    get_variation,
    require_status,
)
from tracker.services.variation_policy import ACTION_EDIT, enforce
from tracker.utils.helpers import parse_date, parse_money

logger = logging.getLogger(__name__)


def _parse_text(value):
    if value is None:
        return None
    return str(value).strip() or None


# field → parser; anything not listed here is read-only on a ledger row
EDITABLE_FIELDS = {
    "new_baseline_cost": parse_money,
    "new_baseline_start": parse_date,
    "new_baseline_end": parse_date,
    "change_rationale": _parse_text,
}


def _editable_variation(variation_id: int, policy):
    variation = get_variation(variation_id)
    enforce(policy, ACTION_EDIT)
    require_status(variation, EDITABLE_STATUSES, "edit impacts")
    return variation


def _parse_field(field: str, value):
    try:
        return EDITABLE_FIELDS[field](value)
    except ValueError as exc:
        raise ValidationError(str(exc), details={field: "invalid"}) from exc


def _id_field(value, field: str = "milestone_id") -> int:
    try:
        if isinstance(value, (bool, float)):
            raise TypeError(field)
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"}) from exc


def _new_row(variation, milestone_id, rationale=None, overrides=None) -> VariationMilestone:
    milestone_id = _id_field(milestone_id)
    milestone = get_scoped(Milestone, milestone_id, project_id=variation.project_id)
    exists = db.session.execute(
        select(VariationMilestone.id).where(
            VariationMilestone.variation_id == variation.id,
            VariationMilestone.milestone_id == milestone.id,
        )
    ).first()
    if exists:
        raise ConflictError("VariationMilestone", "milestone_id", str(milestone.id))

    cost, start, end = milestone.current_baseline()
    row = VariationMilestone(
        variation_id=variation.id,
        milestone_id=milestone.id,
        original_baseline_cost=cost,
        original_baseline_start=start,
        original_baseline_end=end,
        new_baseline_cost=cost,
        new_baseline_start=start,
        new_baseline_end=end,
        change_rationale=_parse_text(rationale),
    )
    for field, value in (overrides or {}).items():
        if field in EDITABLE_FIELDS and field != "change_rationale":
            setattr(row, field, _parse_field(field, value))
    db.session.add(row)
    return row


def add(variation_id: int, milestone_id: int, rationale: str | None = None, *, policy=None) -> dict:
    """Add a milestone to the variation, seeding original and new values from its baseline.

    Raises:
        NotFoundError: variation, or milestone within the variation's project, missing.
        InvalidStateError: variation is past submission.
        ConflictError: the milestone is already on this variation.
    """
    variation = _editable_variation(variation_id, policy)
    row = _new_row(variation, milestone_id, rationale)
    commit_or_raise("VariationMilestone", variation.id, unique_field="milestone_id", value=str(milestone_id))
    logger.info(
        "Impact added", extra={"variation_id": variation.id, "milestone_id": milestone_id},
    )
    return row.to_dict(include_milestone=True)


def update(row_id: int, field: str, value, *, policy=None) -> dict:
    """Update one editable field of a ledger row."""
    if field not in EDITABLE_FIELDS:
        raise ValidationError(
            f"Field '{field}' is not editable",
            details={"field": field, "editable": sorted(EDITABLE_FIELDS)},
        )
    row = get_or_404(VariationMilestone, row_id)
    _editable_variation(row.variation_id, policy)
    setattr(row, field, _parse_field(field, value))
    commit_or_raise("VariationMilestone", row.id)
    return row.to_dict(include_milestone=True)


def remove(row_id: int, *, policy=None) -> None:
    """Remove a ledger row together with its deliverable changes."""
    row = get_or_404(VariationMilestone, row_id)
    variation = _editable_variation(row.variation_id, policy)
    db.session.delete(row)
    commit_or_raise("VariationMilestone", row_id)
    logger.info(
        "Impact removed", extra={"variation_id": variation.id, "milestone_id": row.milestone_id},
    )


def _clear(variation) -> int:
    removed = 0
    for change in variation.deliverable_changes.all():
        db.session.delete(change)
    for row in variation.affected_milestones.all():
        db.session.delete(row)
        removed += 1
    db.session.flush()
    return removed


def clear_all(variation_id: int, *, policy=None) -> int:
    """Remove every ledger row and deliverable change of the variation; returns rows removed."""
    variation = _editable_variation(variation_id, policy)
    removed = _clear(variation)
    commit_or_raise("Variation", variation.id)
    logger.info("Impacts cleared (%d)", removed, extra={"variation_id": variation.id})
    return removed


def sync_from_draft(variation_id: int, rows: list, *, policy=None) -> list[dict]:
    """Replace the ledger with the wizard's affected-milestone list in one transaction.

    Each entry needs ``milestone_id`` and may carry ``new_baseline_cost``,
    ``new_baseline_start``, ``new_baseline_end`` and ``change_rationale``.
    Original values always come from the milestone, never from the draft.
    """
    if not isinstance(rows, list):
        raise ValidationError("affected_milestones must be a list")
    variation = _editable_variation(variation_id, policy)

    seen = set()
    for entry in rows:
        if not isinstance(entry, dict) or entry.get("milestone_id") in (None, ""):
            raise ValidationError(
                "Each affected milestone needs a milestone_id",
                details={"affected_milestones": "milestone_id required"},
            )
        milestone_id = _id_field(entry["milestone_id"])
        if milestone_id in seen:
            raise ConflictError("VariationMilestone", "milestone_id", str(milestone_id))
        seen.add(milestone_id)

    try:
        _clear(variation)
        created = [
            _new_row(variation, entry["milestone_id"], entry.get("change_rationale"), overrides=entry)
            for entry in rows
        ]
    except (NotFoundError, ValidationError, ConflictError, IntegrityError):
        db.session.rollback()
        raise
    commit_or_raise("Variation", variation.id)
    logger.info("Impacts synced (%d)", len(created), extra={"variation_id": variation.id})
    return [row.to_dict(include_milestone=True) for row in created]


# ── Deliverable changes ──────────────────────────────────────────────────────


def add_deliverable_change(variation_id: int, data: dict, *, policy=None) -> dict:
    """Attach a deliverable add/remove/modify to the variation."""
    variation = _editable_variation(variation_id, policy)

    change_type = data.get("change_type")
    if not isinstance(change_type, str) or change_type.strip() not in DELIVERABLE_CHANGE_TYPES:
        raise ValidationError(
            f"change_type must be one of {sorted(DELIVERABLE_CHANGE_TYPES)}",
            details={"change_type": "invalid"},
        )
    change_type = change_type.strip()
    removal_reason = _parse_text(data.get("removal_reason"))
    if change_type == "remove" and not removal_reason:
        raise ValidationError(
            "removal_reason is required when removing a deliverable",
            details={"removal_reason": "required"},
        )

    row_id = data.get("variation_milestone_id")
    if row_id is not None:
        row_id = _id_field(row_id, "variation_milestone_id")
        row = db.session.get(VariationMilestone, row_id)
        if row is None or row.variation_id != variation.id:
            raise NotFoundError(resource="VariationMilestone", resource_id=row_id)

    change = VariationDeliverable(
        variation_id=variation.id,
        variation_milestone_id=row_id,
        change_type=change_type,
        deliverable_ref=_parse_text(data.get("deliverable_ref")),
        original_data=data.get("original_data"),
        new_data=data.get("new_data"),
        removal_reason=removal_reason,
    )
    db.session.add(change)
    commit_or_raise("VariationDeliverable", variation.id)
    logger.info(
        "Deliverable change added (%s)", change_type, extra={"variation_id": variation.id},
    )
    return change.to_dict()


def remove_deliverable_change(change_id: int, *, policy=None) -> None:
    change = get_or_404(VariationDeliverable, change_id)
    _editable_variation(change.variation_id, policy)
    db.session.delete(change)
    commit_or_raise("VariationDeliverable", change_id)
