"""
Platform-wide exception hierarchy.

Services raise these; blueprints register handlers against them once and get
consistent HTTP status codes everywhere (see ``tracker.blueprints.variation_bp``).

Usage:
    from tracker.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Variation", resource_id=42)
    raise ValidationError("impact_summary is required", details={"impact_summary": "required"})
    raise InvalidStateError(resource="Variation", resource_id=42, status="draft", attempted="reset")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Variation", "Milestone").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateError(Exception):
    """Raised when an operation is not allowed from the entity's current status.

    Maps to HTTP 409.  Carries enough context for a user-facing message:
    which entity, what status it is in, and what was attempted.

    Args:
        resource: Model name.
        resource_id: PK of the entity.
        status: Current status at the time of the attempt.
        attempted: The transition or operation that was refused.
        message: Optional override of the generated message.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None,
        status: str,
        attempted: str,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.status = status
        self.attempted = attempted
        msg = message or f"{resource} id={resource_id} cannot {attempted} while status is '{status}'"
        super().__init__(msg)

    @property
    def details(self) -> dict:
        return {
            "resource_id": self.resource_id,
            "status": self.status,
            "attempted": self.attempted,
        }


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class PermissionDenied(Exception):
    """Raised when the caller's capabilities do not cover the operation.

    Maps to HTTP 403.
    """

    def __init__(self, action: str, role: str | None = None) -> None:
        self.action = action
        self.role = role
        msg = f"Role '{role or 'none'}' is not permitted to {action}"
        super().__init__(msg)


class StoreError(Exception):
    """Raised when the underlying data store fails (connection, constraint, lock).

    Maps to HTTP 500.  The original SQLAlchemy error is chained as __cause__.
    """

    def __init__(self, message: str, resource_id: int | str | None = None) -> None:
        self.resource_id = resource_id
        super().__init__(message)


class PartialApplicationError(StoreError):
    """Raised when applying an approved variation fails part-way through.

    The unit of work is rolled back: no milestone keeps a partial update and
    the variation stays 'approved' so the apply can be retried.

    Args:
        variation_id: The variation being applied.
        milestone_id: The milestone whose update failed (None if the failure
                      happened while freezing the certificate).
        processed: Number of milestones processed before the failure.
    """

    def __init__(self, variation_id: int, milestone_id: int | None, processed: int) -> None:
        self.variation_id = variation_id
        self.milestone_id = milestone_id
        self.processed = processed
        where = f"milestone id={milestone_id}" if milestone_id is not None else "certificate freeze"
        msg = (
            f"Applying variation id={variation_id} failed at {where} "
            f"after {processed} milestone(s); changes rolled back, variation remains approved"
        )
        super().__init__(msg, resource_id=variation_id)

    @property
    def details(self) -> dict:
        return {
            "variation_id": self.variation_id,
            "milestone_id": self.milestone_id,
            "processed": self.processed,
        }
