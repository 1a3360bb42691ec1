"""
Capability policy for variation operations.

Callers pass a ``VariationPolicy`` into every state-changing service call
instead of the services reading request state.  The policy is built from the
caller's ``ProjectMember`` role:

    admin        everything
    supplier_pm  create / edit / delete, submit, sign as supplier, reject, reset, apply
    customer_pm  sign as customer, reject
    viewer       read only

``policy=None`` means a trusted system caller (the auto-apply after the
second signature, maintenance scripts, tests) and skips the check.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select

from tracker.core.exceptions import PermissionDenied
from tracker.models import db
from tracker.models.auth import ProjectMember

logger = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_EDIT = "edit"
ACTION_DELETE = "delete"
ACTION_SUBMIT = "submit"
ACTION_SIGN_SUPPLIER = "sign_supplier"
ACTION_SIGN_CUSTOMER = "sign_customer"
ACTION_REJECT = "reject"
ACTION_RESET = "reset"
ACTION_APPLY = "apply"

ALL_ACTIONS = frozenset({
    ACTION_CREATE, ACTION_EDIT, ACTION_DELETE, ACTION_SUBMIT,
    ACTION_SIGN_SUPPLIER, ACTION_SIGN_CUSTOMER, ACTION_REJECT,
    ACTION_RESET, ACTION_APPLY,
})

ROLE_CAPABILITIES = {
    "admin": ALL_ACTIONS,
    "supplier_pm": frozenset({
        ACTION_CREATE, ACTION_EDIT, ACTION_DELETE, ACTION_SUBMIT,
        ACTION_SIGN_SUPPLIER, ACTION_REJECT, ACTION_RESET, ACTION_APPLY,
    }),
    "customer_pm": frozenset({ACTION_SIGN_CUSTOMER, ACTION_REJECT}),
    "viewer": frozenset(),
}


def sign_action(role: str) -> str:
    """Map a signer role (supplier/customer) to its capability."""
    return ACTION_SIGN_SUPPLIER if role == "supplier" else ACTION_SIGN_CUSTOMER


@dataclass(frozen=True)
class VariationPolicy:
    """What one user may do on one project's variations."""

    role: str | None
    user_id: int | None = None
    project_id: int | None = None

    def can(self, action: str) -> bool:
        return action in ROLE_CAPABILITIES.get(self.role, frozenset())

    def require(self, action: str) -> None:
        if not self.can(action):
            logger.warning(
                "Capability denied: %s", action,
                extra={"user_id": self.user_id, "project_id": self.project_id},
            )
            raise PermissionDenied(action, self.role)


def policy_for(project_id: int, user_id: int | None) -> VariationPolicy:
    """Build the policy of *user_id* on *project_id* (no membership → no capabilities)."""
    role = None
    if user_id is not None:
        role = db.session.execute(
            select(ProjectMember.role).where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == user_id,
            )
        ).scalar_one_or_none()
    return VariationPolicy(role=role, user_id=user_id, project_id=project_id)


def enforce(policy: VariationPolicy | None, action: str) -> None:
    """Check *action* against *policy*; a None policy is a trusted system caller."""
    if policy is not None:
        policy.require(action)
