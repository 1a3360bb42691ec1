"""Variation certificate: number and frozen snapshot written at apply time."""

from flask import current_app

from tracker.models import db
from tracker.models.auth import User


def _money(value):
    return float(value) if value is not None else None


def _iso(value):
    return value.isoformat() if value else None


def certificate_number(variation) -> str:
    """``{project code}-{variation_ref}-CERT``, with a configured prefix when the project has no code."""
    project = variation.project
    prefix = (project.code if project else None) or current_app.config.get("CERTIFICATE_PREFIX_FALLBACK", "PROJ")
    return f"{prefix}-{variation.variation_ref}-CERT"


def _signature(user_id, signed_at) -> dict | None:
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    return {
        "user_id": user_id,
        "full_name": user.full_name if user else None,
        "email": user.email if user else None,
        "signed_at": _iso(signed_at),
    }


def _milestone_entry(row) -> dict:
    milestone = row.milestone
    return {
        "milestone_id": row.milestone_id,
        "milestone_ref": milestone.milestone_ref if milestone else None,
        "milestone_name": milestone.name if milestone else None,
        "original_baseline_cost": _money(row.original_baseline_cost),
        "new_baseline_cost": _money(row.new_baseline_cost),
        "original_baseline_start": _iso(row.original_baseline_start),
        "new_baseline_start": _iso(row.new_baseline_start),
        "original_baseline_end": _iso(row.original_baseline_end),
        "new_baseline_end": _iso(row.new_baseline_end),
        "cost_delta": _money(row.cost_delta),
        "days_delta": row.days_delta,
        "baseline_version_before": row.baseline_version_before,
        "baseline_version_after": row.baseline_version_after,
        "change_rationale": row.change_rationale,
    }


def build_certificate(variation, applied_at) -> dict:
    """Snapshot everything a reader of the certificate needs, as plain JSON.

    Called after the baseline versions have been stamped on the ledger rows,
    so before/after versions are final.
    """
    return {
        "certificate_number": certificate_number(variation),
        "variation_ref": variation.variation_ref,
        "title": variation.title,
        "variation_type": variation.variation_type,
        "description": variation.description,
        "reason": variation.reason,
        "contract_terms_reference": variation.contract_terms_reference,
        "impact_summary": variation.impact_summary,
        "total_cost_impact": _money(variation.total_cost_impact),
        "total_days_impact": variation.total_days_impact,
        "affected_milestones": [_milestone_entry(row) for row in variation.affected_milestones.all()],
        "deliverable_changes": [change.to_dict() for change in variation.deliverable_changes.all()],
        "supplier_signature": _signature(variation.supplier_signed_by, variation.supplier_signed_at),
        "customer_signature": _signature(variation.customer_signed_by, variation.customer_signed_at),
        "applied_at": _iso(applied_at),
    }
