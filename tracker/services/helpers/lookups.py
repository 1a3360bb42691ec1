"""
Lookup and commit helpers shared by the variation services.

Every service in ``tracker.services`` loads its aggregate through these
helpers so a missing row always surfaces as ``NotFoundError`` (HTTP 404) and
a failed commit always surfaces as ``StoreError`` (HTTP 500) after the
session has been rolled back.

Usage:
    variation = get_variation(variation_id, for_update=True)
    milestone = get_scoped(Milestone, milestone_id, project_id=variation.project_id)
    require_status(variation, EDITABLE_STATUSES, "edit impacts")
    commit_or_raise("Variation", variation.id)
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tracker.core.exceptions import ConflictError, InvalidStateError, NotFoundError, StoreError
from tracker.models import db
from tracker.models.variation import Variation

logger = logging.getLogger(__name__)


def get_or_404(model, pk: int):
    """Fetch a row by primary key or raise NotFoundError."""
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return obj


def get_scoped(model, pk: int, *, project_id: int):
    """Fetch a row by primary key, restricted to one project.

    A row that exists in another project is indistinguishable from a missing
    one: both raise NotFoundError.
    """
    stmt = select(model).where(model.id == pk, model.project_id == project_id)
    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is None:
        logger.debug("get_scoped: %s id=%s not found in project %s", model.__name__, pk, project_id)
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return obj


def get_variation(variation_id: int, *, for_update: bool = False) -> Variation:
    """Load a variation, optionally with a row lock (ignored by SQLite)."""
    if not for_update:
        return get_or_404(Variation, variation_id)
    stmt = select(Variation).where(Variation.id == variation_id).with_for_update()
    variation = db.session.execute(stmt).scalar_one_or_none()
    if variation is None:
        raise NotFoundError(resource="Variation", resource_id=variation_id)
    return variation


def require_status(variation: Variation, allowed, attempted: str) -> None:
    if variation.status not in allowed:
        raise InvalidStateError(
            resource="Variation",
            resource_id=variation.id,
            status=variation.status,
            attempted=attempted,
        )


def commit_or_raise(resource: str, resource_id=None, *, unique_field: str | None = None, value=None) -> None:
    """Commit the session; roll back and raise a typed error on failure.

    IntegrityError → ConflictError when *unique_field* names the constraint
    the caller expects to collide on, StoreError otherwise.
    """
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on %s commit: %s", resource, exc.orig)
        if unique_field:
            raise ConflictError(resource, unique_field, value) from exc
        raise StoreError(f"{resource} violates a database constraint", resource_id=resource_id) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Database error on %s commit", resource)
        raise StoreError(f"Could not save {resource}", resource_id=resource_id) from exc
