"""
Variation reference allocation: VAR-001, VAR-002, ... per project.

The primary path bumps a ``reference_counters`` row with a single
``UPDATE ... SET last_value = last_value + 1`` inside the caller's
transaction, so two concurrent creators serialise on the row lock and never
see the same value.  A missing counter row is seeded from the highest
``VAR-NNN`` already stored for the project.

The count-based fallback (``count(existing) + 1``) is only used when
``REFERENCE_FALLBACK_ENABLED`` is set; it is not safe under concurrency.
"""

import logging
import re

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from tracker.core.exceptions import StoreError
from tracker.models import db
from tracker.models.variation import ReferenceCounter, Variation

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "VAR"
COUNTER_SCOPE = "variation"

_REF_PATTERN = re.compile(rf"^{REFERENCE_PREFIX}-(\d+)$")


def format_reference(value: int) -> str:
    """Zero-pad to three digits; wider numbers keep their natural width."""
    return f"{REFERENCE_PREFIX}-{value:03d}"


def _highest_existing(project_id: int) -> int:
    refs = db.session.execute(
        select(Variation.variation_ref).where(Variation.project_id == project_id)
    ).scalars()
    highest = 0
    for ref in refs:
        match = _REF_PATTERN.match(ref or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


def _next_counter_value(project_id: int) -> int:
    result = db.session.execute(
        update(ReferenceCounter)
        .where(ReferenceCounter.project_id == project_id, ReferenceCounter.scope == COUNTER_SCOPE)
        .values(last_value=ReferenceCounter.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        counter = ReferenceCounter(
            project_id=project_id,
            scope=COUNTER_SCOPE,
            last_value=_highest_existing(project_id) + 1,
        )
        db.session.add(counter)
        db.session.flush()
        return counter.last_value
    return db.session.execute(
        select(ReferenceCounter.last_value).where(
            ReferenceCounter.project_id == project_id,
            ReferenceCounter.scope == COUNTER_SCOPE,
        )
    ).scalar_one()


def _count_fallback(project_id: int) -> int:
    count = db.session.execute(
        select(func.count(Variation.id)).where(Variation.project_id == project_id)
    ).scalar() or 0
    return count + 1


def allocate_reference(project_id: int) -> str:
    """Return the next unused reference for *project_id*.

    Raises:
        StoreError: the counter could not be bumped and the fallback is disabled
                    (or failed as well).
    """
    try:
        value = _next_counter_value(project_id)
    except SQLAlchemyError as exc:
        db.session.rollback()
        if not current_app.config.get("REFERENCE_FALLBACK_ENABLED", False):
            logger.exception("Reference counter failed", extra={"project_id": project_id})
            raise StoreError("Could not allocate a variation reference") from exc
        logger.warning(
            "Reference counter failed, using count fallback: %s", exc,
            extra={"project_id": project_id},
        )
        try:
            value = _count_fallback(project_id)
        except SQLAlchemyError as fallback_exc:
            db.session.rollback()
            raise StoreError("Could not allocate a variation reference") from fallback_exc

    reference = format_reference(value)
    logger.debug("Allocated %s", reference, extra={"project_id": project_id})
    return reference
