"""
Variation Service — aggregate CRUD, wizard auto-save and read models.

Business logic for:
    - Creation with an allocated VAR-NNN reference (draft, wizard step 1)
    - Wizard auto-save (form_data / form_step only, never status)
    - Header edits while draft
    - Deletion of draft / submitted / rejected variations with their ledger
    - Read models: details, list with stats, dashboard summary, certificate
    - Milestone views: baseline history, variations touching a milestone,
      pending-variation check, date-derived dependencies
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from tracker.core.exceptions import NotFoundError, ValidationError
from tracker.models import db
from tracker.models.auth import User
from tracker.models.project import Milestone, Project
from tracker.models.variation import (
    DELETABLE_STATUSES,
    EDITABLE_STATUSES,
    PENDING_STATUSES,
    STATUS_APPLIED,
    STATUS_APPROVED,
    STATUS_AWAITING_CUSTOMER,
    STATUS_AWAITING_SUPPLIER,
    STATUS_DRAFT,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    VARIATION_TYPES,
    MilestoneBaselineVersion,
    Variation,
    VariationMilestone,
)
from tracker.services.helpers.lookups import (
    commit_or_raise,
    get_or_404,
    get_variation,
    require_status,
)
from tracker.services.reference_allocator import allocate_reference
from tracker.services.variation_policy import ACTION_CREATE, ACTION_DELETE, ACTION_EDIT, enforce

logger = logging.getLogger(__name__)

HEADER_FIELDS = ("title", "variation_type", "description", "reason", "contract_terms_reference")
DEFAULT_VARIATION_TYPE = "combined"


def _clean_header(data: dict, *, partial: bool) -> dict:
    values = {}
    errors = {}
    for field in HEADER_FIELDS:
        if field not in data:
            continue
        raw = data[field]
        values[field] = str(raw).strip() if raw is not None else None

    if not partial or "title" in values:
        if not values.get("title"):
            errors["title"] = "required"
        elif len(values["title"]) > 300:
            errors["title"] = "must be 300 characters or fewer"
    if "variation_type" in values or not partial:
        vtype = values.get("variation_type") or (None if partial else DEFAULT_VARIATION_TYPE)
        if vtype not in VARIATION_TYPES:
            errors["variation_type"] = f"must be one of {sorted(VARIATION_TYPES)}"
        else:
            values["variation_type"] = vtype

    if errors:
        raise ValidationError("Invalid variation header", details=errors)
    return values


# ── Commands ─────────────────────────────────────────────────────────────────


def create_variation(project_id: int, data: dict, user_id: int | None, *, policy=None) -> dict:
    """Create a draft variation with the next VAR-NNN reference of the project."""
    project = get_or_404(Project, project_id)
    enforce(policy, ACTION_CREATE)
    values = _clean_header(data, partial=False)

    reference = allocate_reference(project.id)
    variation = Variation(
        project_id=project.id,
        variation_ref=reference,
        status=STATUS_DRAFT,
        form_step=1,
        form_data=data.get("form_data"),
        created_by=user_id,
        **values,
    )
    db.session.add(variation)
    commit_or_raise("Variation", unique_field="variation_ref", value=reference)

    logger.info(
        "Variation created",
        extra={
            "variation_id": variation.id,
            "project_id": project.id,
            "variation_ref": reference,
            "user_id": user_id,
        },
    )
    return variation.to_dict()


def save_form_progress(variation_id: int, form_data, step, *, policy=None) -> dict:
    """Persist the wizard draft; touches form_data and form_step only."""
    variation = get_variation(variation_id)
    enforce(policy, ACTION_EDIT)
    require_status(variation, EDITABLE_STATUSES, "save form progress")

    try:
        step = int(step)
    except (TypeError, ValueError) as exc:
        raise ValidationError("step must be an integer", details={"step": "invalid"}) from exc
    if step < 1:
        raise ValidationError("step must be 1 or greater", details={"step": "invalid"})
    if form_data is not None and not isinstance(form_data, dict):
        raise ValidationError("form_data must be an object", details={"form_data": "invalid"})

    variation.form_data = form_data
    variation.form_step = step
    commit_or_raise("Variation", variation.id)
    logger.debug("Form progress saved (step %d)", step, extra={"variation_id": variation.id})
    return variation.to_dict()


def update_variation(variation_id: int, data: dict, *, policy=None) -> dict:
    """Edit header fields of a draft variation."""
    variation = get_variation(variation_id)
    enforce(policy, ACTION_EDIT)
    require_status(variation, {STATUS_DRAFT}, "edit header")

    values = _clean_header(data, partial=True)
    for field, value in values.items():
        setattr(variation, field, value)
    commit_or_raise("Variation", variation.id)
    return variation.to_dict()


def delete_draft_variation(variation_id: int, *, policy=None) -> None:
    """Hard-delete a draft, submitted or rejected variation and its ledger.

    Ledger cleanup is best effort: a failure there is logged and the
    variation delete still goes ahead (the cascade removes the rest).
    """
    variation = get_variation(variation_id)
    enforce(policy, ACTION_DELETE)
    require_status(variation, DELETABLE_STATUSES, "delete")

    try:
        for change in variation.deliverable_changes.all():
            db.session.delete(change)
        for row in variation.affected_milestones.all():
            db.session.delete(row)
        db.session.flush()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning(
            "Ledger cleanup failed before delete: %s", exc, extra={"variation_id": variation_id},
        )
        variation = get_variation(variation_id)

    reference = variation.variation_ref
    project_id = variation.project_id
    db.session.delete(variation)
    commit_or_raise("Variation", variation_id)
    logger.info(
        "Variation deleted",
        extra={"variation_id": variation_id, "project_id": project_id, "variation_ref": reference},
    )


# ── Read models ──────────────────────────────────────────────────────────────


def _profile(user_id):
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    if user is None:
        return None
    return {"id": user.id, "full_name": user.full_name, "email": user.email}


def get_with_details(variation_id: int) -> dict:
    """Variation with affected milestones, deliverable changes and signer profiles."""
    variation = get_variation(variation_id)
    result = variation.to_dict()
    result["affected_milestones"] = [
        row.to_dict(include_milestone=True) for row in variation.affected_milestones.all()
    ]
    result["deliverable_changes"] = [change.to_dict() for change in variation.deliverable_changes.all()]
    result["supplier_signer"] = _profile(variation.supplier_signed_by)
    result["customer_signer"] = _profile(variation.customer_signed_by)
    result["rejector"] = _profile(variation.rejected_by)
    return result


def get_all_with_stats(project_id: int) -> list[dict]:
    """All variations of a project, newest first, each with its milestone_count."""
    get_or_404(Project, project_id)
    counts = dict(
        db.session.execute(
            select(VariationMilestone.variation_id, func.count(VariationMilestone.id))
            .join(Variation, Variation.id == VariationMilestone.variation_id)
            .where(Variation.project_id == project_id)
            .group_by(VariationMilestone.variation_id)
        ).all()
    )
    variations = db.session.execute(
        select(Variation)
        .where(Variation.project_id == project_id)
        .order_by(Variation.created_at.desc(), Variation.id.desc())
    ).scalars().all()

    result = []
    for variation in variations:
        item = variation.to_dict()
        item["milestone_count"] = counts.get(variation.id, 0)
        result.append(item)
    return result


def get_summary(project_id: int) -> dict:
    """Dashboard counts per status group; impact totals cover applied variations only."""
    get_or_404(Project, project_id)
    rows = db.session.execute(
        select(Variation.status, Variation.total_cost_impact, Variation.total_days_impact)
        .where(Variation.project_id == project_id)
    ).all()

    summary = {
        "total": len(rows),
        "draft": 0,
        "pending": 0,
        "approved": 0,
        "applied": 0,
        "rejected": 0,
        "total_cost_impact": 0.0,
        "total_days_impact": 0,
    }
    for status, cost, days in rows:
        if status == STATUS_DRAFT:
            summary["draft"] += 1
        elif status in (STATUS_SUBMITTED, STATUS_AWAITING_CUSTOMER, STATUS_AWAITING_SUPPLIER):
            summary["pending"] += 1
        elif status == STATUS_APPROVED:
            summary["approved"] += 1
        elif status == STATUS_APPLIED:
            summary["applied"] += 1
            summary["total_cost_impact"] += float(cost or 0)
            summary["total_days_impact"] += days or 0
        elif status == STATUS_REJECTED:
            summary["rejected"] += 1
    return summary


def get_certificate(variation_id: int) -> dict:
    """Frozen certificate of an applied variation."""
    variation = get_variation(variation_id)
    if variation.status != STATUS_APPLIED:
        raise NotFoundError(resource="Certificate", resource_id=variation_id)
    return {
        "variation_id": variation.id,
        "certificate_number": variation.certificate_number,
        "certificate_data": variation.certificate_data,
        "applied_at": variation.applied_at.isoformat() if variation.applied_at else None,
    }


# ── Milestone views ──────────────────────────────────────────────────────────


def get_milestone_baseline_history(milestone_id: int) -> list[dict]:
    """Baseline versions of a milestone, oldest first."""
    get_or_404(Milestone, milestone_id)
    versions = db.session.execute(
        select(MilestoneBaselineVersion)
        .where(MilestoneBaselineVersion.milestone_id == milestone_id)
        .order_by(MilestoneBaselineVersion.version.asc())
    ).scalars().all()
    return [v.to_dict() for v in versions]


def get_variations_for_milestone(milestone_id: int) -> list[dict]:
    get_or_404(Milestone, milestone_id)
    variations = db.session.execute(
        select(Variation)
        .join(VariationMilestone, VariationMilestone.variation_id == Variation.id)
        .where(VariationMilestone.milestone_id == milestone_id)
        .order_by(Variation.created_at.desc(), Variation.id.desc())
    ).scalars().unique().all()
    return [v.to_dict() for v in variations]


def has_pending_variation(milestone_id: int) -> bool:
    """True when a variation that is not yet applied or rejected touches the milestone."""
    found = db.session.execute(
        select(VariationMilestone.id)
        .join(Variation, Variation.id == VariationMilestone.variation_id)
        .where(
            VariationMilestone.milestone_id == milestone_id,
            Variation.status.in_(PENDING_STATUSES),
        )
        .limit(1)
    ).first()
    return found is not None


def get_milestones_with_dependencies(project_id: int) -> list[dict]:
    """Milestones ordered by start date, each with date-derived dependencies.

    ``dependencies``: milestones ending on or before this one starts.
    ``dependents``:   milestones starting on or after this one ends.
    """
    get_or_404(Project, project_id)
    milestones = db.session.execute(
        select(Milestone)
        .where(Milestone.project_id == project_id)
        .order_by(Milestone.start_date.is_(None), Milestone.start_date.asc(), Milestone.id.asc())
    ).scalars().all()

    result = []
    for m in milestones:
        dependencies = []
        dependents = []
        for other in milestones:
            if other.id == m.id:
                continue
            if other.end_date and m.start_date and other.end_date <= m.start_date:
                dependencies.append(other.milestone_ref)
            if m.end_date and other.start_date and m.end_date <= other.start_date:
                dependents.append(other.milestone_ref)
        item = m.to_dict()
        item["dependencies"] = dependencies
        item["dependents"] = dependents
        item["has_pending_variation"] = has_pending_variation(m.id)
        result.append(item)
    return result

