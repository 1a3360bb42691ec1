"""
Apply Engine — turns an approved variation into new milestone baselines.

For every ledger row with a live milestone:
    1. v = highest MilestoneBaselineVersion of the milestone (0 if none)
    2. baseline triple ← new_* (and, when VARIATION_REBASELINE_FORECAST is on,
       forecast start/end/billable and billable as well)
    3. append MilestoneBaselineVersion v+1 carrying both signatures
    4. stamp the row: before = v or 1, after = v+1

The whole loop, the certificate snapshot and the status change to
``applied`` form one unit of work.  Any store failure rolls all of it back,
leaves the variation ``approved`` and raises PartialApplicationError, so the
apply can simply be re-run.  A row whose milestone already carries a version
for this variation is re-stamped from it instead of producing a second one.
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from tracker.core.exceptions import PartialApplicationError
from tracker.models import db
from tracker.models.variation import (
    STATUS_APPLIED,
    STATUS_APPROVED,
    MilestoneBaselineVersion,
)
from tracker.services.certificate import build_certificate, certificate_number
from tracker.services.helpers.lookups import get_variation, require_status
from tracker.services.variation_policy import ACTION_APPLY, enforce

logger = logging.getLogger(__name__)


def current_version(milestone_id: int) -> int:
    """Highest baseline version recorded for the milestone (0 when never baselined)."""
    return db.session.execute(
        select(func.max(MilestoneBaselineVersion.version)).where(
            MilestoneBaselineVersion.milestone_id == milestone_id
        )
    ).scalar() or 0


def _existing_version(milestone_id: int, variation_id: int):
    return db.session.execute(
        select(MilestoneBaselineVersion).where(
            MilestoneBaselineVersion.milestone_id == milestone_id,
            MilestoneBaselineVersion.variation_id == variation_id,
        )
    ).scalar_one_or_none()


def _apply_row(variation, row, rebaseline_forecast: bool) -> int:
    """Re-baseline one milestone; returns the version now in force."""
    existing = _existing_version(row.milestone_id, variation.id)
    if existing is not None:
        row.baseline_version_before = max(existing.version - 1, 1)
        row.baseline_version_after = existing.version
        return existing.version

    version = current_version(row.milestone_id)
    milestone = row.milestone

    milestone.baseline_start_date = row.new_baseline_start
    milestone.baseline_end_date = row.new_baseline_end
    milestone.baseline_billable = row.new_baseline_cost
    if rebaseline_forecast:
        milestone.start_date = row.new_baseline_start
        milestone.forecast_end_date = row.new_baseline_end
        milestone.forecast_billable = row.new_baseline_cost
        milestone.billable = row.new_baseline_cost

    db.session.add(MilestoneBaselineVersion(
        milestone_id=row.milestone_id,
        version=version + 1,
        variation_id=variation.id,
        baseline_start_date=row.new_baseline_start,
        baseline_end_date=row.new_baseline_end,
        baseline_billable=row.new_baseline_cost,
        supplier_signed_by=variation.supplier_signed_by,
        supplier_signed_at=variation.supplier_signed_at,
        customer_signed_by=variation.customer_signed_by,
        customer_signed_at=variation.customer_signed_at,
    ))
    row.baseline_version_before = version or 1
    row.baseline_version_after = version + 1
    db.session.flush()
    return version + 1


def apply_variation(variation_id: int, *, policy=None) -> dict:
    """Apply an approved variation to its milestones and freeze the certificate.

    Raises:
        NotFoundError: unknown variation.
        PermissionDenied: policy lacks the apply capability.
        InvalidStateError: variation is not ``approved`` (including already applied).
        PartialApplicationError: a store failure; nothing was changed.
    """
    variation = get_variation(variation_id, for_update=True)
    enforce(policy, ACTION_APPLY)
    require_status(variation, {STATUS_APPROVED}, "apply")

    rebaseline_forecast = bool(current_app.config.get("VARIATION_REBASELINE_FORECAST", True))
    project_id = variation.project_id
    rows = [row for row in variation.affected_milestones.all() if row.milestone_id is not None]

    processed = 0
    failing_milestone = None
    try:
        for row in rows:
            failing_milestone = row.milestone_id
            version = _apply_row(variation, row, rebaseline_forecast)
            processed += 1
            logger.debug(
                "Milestone re-baselined to v%d", version,
                extra={"variation_id": variation_id, "milestone_id": row.milestone_id},
            )
        failing_milestone = None

        applied_at = datetime.now(timezone.utc)
        variation.certificate_number = certificate_number(variation)
        variation.certificate_data = build_certificate(variation, applied_at)
        variation.applied_at = applied_at
        variation.status = STATUS_APPLIED
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error(
            "Apply failed after %d milestone(s), rolled back", processed,
            extra={"variation_id": variation_id, "project_id": project_id, "milestone_id": failing_milestone},
        )
        raise PartialApplicationError(variation_id, failing_milestone, processed) from exc
    except Exception:
        db.session.rollback()
        logger.exception(
            "Apply aborted after %d milestone(s), rolled back", processed,
            extra={"variation_id": variation_id, "project_id": project_id, "milestone_id": failing_milestone},
        )
        raise

    logger.info(
        "Variation applied to %d milestone(s)", processed,
        extra={
            "variation_id": variation_id,
            "project_id": project_id,
            "variation_ref": variation.variation_ref,
            "from_status": STATUS_APPROVED,
            "to_status": STATUS_APPLIED,
        },
    )
    return variation.to_dict()
