"""
Contract Tracker
Variation (change-control) domain models.

Models:
    - Variation:                 change request aggregate (header, draft, totals, signatures, certificate)
    - VariationMilestone:        one affected milestone per variation, original vs. proposed baseline
    - VariationDeliverable:      deliverable adjustments keyed to an affected milestone
    - MilestoneBaselineVersion:  append-only baseline history per milestone
    - ReferenceCounter:          per-project atomic sequence behind VAR-NNN references

Architecture:
    Project ──1:N──▶ Variation ──1:N──▶ VariationMilestone ──1:N──▶ VariationDeliverable
    Milestone ──1:N──▶ MilestoneBaselineVersion ◀──N:1── Variation

Lifecycle states:
    Variation:  draft → submitted → awaiting_customer | awaiting_supplier → approved → applied
                any non-terminal → rejected → draft
"""

from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy import inspect as sa_inspect

from tracker.core.exceptions import InvalidStateError
from tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

STATUS_DRAFT = "draft"
STATUS_SUBMITTED = "submitted"
STATUS_AWAITING_CUSTOMER = "awaiting_customer"
STATUS_AWAITING_SUPPLIER = "awaiting_supplier"
STATUS_APPROVED = "approved"
STATUS_APPLIED = "applied"
STATUS_REJECTED = "rejected"

VARIATION_STATUSES = (
    STATUS_DRAFT,
    STATUS_SUBMITTED,
    STATUS_AWAITING_CUSTOMER,
    STATUS_AWAITING_SUPPLIER,
    STATUS_APPROVED,
    STATUS_APPLIED,
    STATUS_REJECTED,
)

VARIATION_TYPES = frozenset({
    "scope_extension",
    "scope_reduction",
    "time_extension",
    "cost_adjustment",
    "combined",
})

SIGNER_ROLES = frozenset({"supplier", "customer"})

DELIVERABLE_CHANGE_TYPES = frozenset({"add", "remove", "modify"})

# Re-signing by the same party keeps the awaiting state, hence the self-loops.
VARIATION_TRANSITIONS = {
    STATUS_DRAFT:             [STATUS_SUBMITTED, STATUS_REJECTED],
    STATUS_SUBMITTED:         [STATUS_SUBMITTED, STATUS_AWAITING_CUSTOMER, STATUS_AWAITING_SUPPLIER,
                               STATUS_REJECTED],
    STATUS_AWAITING_CUSTOMER: [STATUS_AWAITING_CUSTOMER, STATUS_APPROVED, STATUS_REJECTED],
    STATUS_AWAITING_SUPPLIER: [STATUS_AWAITING_SUPPLIER, STATUS_APPROVED, STATUS_REJECTED],
    STATUS_APPROVED:          [STATUS_APPLIED, STATUS_REJECTED],
    STATUS_APPLIED:           [],
    STATUS_REJECTED:          [STATUS_REJECTED, STATUS_DRAFT],
}

# Ledger rows may only change while the variation is still being authored.
EDITABLE_STATUSES = frozenset({STATUS_DRAFT, STATUS_SUBMITTED})
DELETABLE_STATUSES = frozenset({STATUS_DRAFT, STATUS_SUBMITTED, STATUS_REJECTED})
SIGNABLE_STATUSES = frozenset({STATUS_SUBMITTED, STATUS_AWAITING_CUSTOMER, STATUS_AWAITING_SUPPLIER})
PENDING_STATUSES = frozenset({
    STATUS_DRAFT, STATUS_SUBMITTED, STATUS_AWAITING_CUSTOMER, STATUS_AWAITING_SUPPLIER, STATUS_APPROVED,
})

# Fields that become read-only once a variation is applied.
FROZEN_ON_APPLY = (
    "status",
    "certificate_number",
    "certificate_data",
    "applied_at",
    "total_cost_impact",
    "total_days_impact",
    "supplier_signed_by",
    "supplier_signed_at",
    "customer_signed_by",
    "customer_signed_at",
)


def validate_variation_transition(old_status, new_status):
    """Return True if Variation status transition is valid."""
    return new_status in VARIATION_TRANSITIONS.get(old_status, [])


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return float(value) if value is not None else None


def _utcnow():
    return datetime.now(timezone.utc)


# ── Variation ────────────────────────────────────────────────────────────────


class Variation(db.Model):
    """
    Change request against the contractual baseline of one or more milestones.

    Business rules:
    - variation_ref (VAR-NNN) is unique per project and allocated once.
    - total_cost_impact / total_days_impact are only written on submission.
    - Once status == applied, certificate_data / applied_at are frozen
      (enforced by the before_update listener below).
    """

    __tablename__ = "variations"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Reference and classification
    variation_ref = db.Column(db.String(20), nullable=False, comment="VAR-001, VAR-002, ...")
    title = db.Column(db.String(300), nullable=False)
    variation_type = db.Column(
        db.String(30),
        nullable=False,
        comment="scope_extension | scope_reduction | time_extension | cost_adjustment | combined",
    )
    description = db.Column(db.Text, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    contract_terms_reference = db.Column(db.Text, nullable=True)
    impact_summary = db.Column(db.Text, nullable=True)

    # Workflow
    status = db.Column(db.String(30), nullable=False, default=STATUS_DRAFT, index=True)
    form_step = db.Column(db.Integer, nullable=False, default=1, comment="Wizard step for draft resume")
    form_data = db.Column(db.JSON, nullable=True, comment="Opaque wizard draft")

    # Totals (computed on submit)
    total_cost_impact = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_days_impact = db.Column(db.Integer, nullable=False, default=0)

    # Supplier signature
    supplier_signed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    supplier_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Customer signature
    customer_signed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    customer_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Rejection
    rejected_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    # Certificate
    certificate_number = db.Column(db.String(120), nullable=True)
    certificate_data = db.Column(db.JSON, nullable=True)
    applied_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    affected_milestones = db.relationship(
        "VariationMilestone",
        backref="variation",
        lazy="dynamic",
        cascade="all, delete-orphan",
        order_by="VariationMilestone.id",
    )
    deliverable_changes = db.relationship(
        "VariationDeliverable",
        backref="variation",
        lazy="dynamic",
        cascade="all, delete-orphan",
        order_by="VariationDeliverable.id",
    )
    project = db.relationship("Project", backref=db.backref("variations", lazy="dynamic"))

    __table_args__ = (
        db.UniqueConstraint("project_id", "variation_ref", name="uq_variations_project_ref"),
    )

    @property
    def is_applied(self) -> bool:
        return self.status == STATUS_APPLIED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "variation_ref": self.variation_ref,
            "title": self.title,
            "variation_type": self.variation_type,
            "description": self.description,
            "reason": self.reason,
            "contract_terms_reference": self.contract_terms_reference,
            "impact_summary": self.impact_summary,
            "status": self.status,
            "form_step": self.form_step,
            "form_data": self.form_data,
            "total_cost_impact": _money(self.total_cost_impact),
            "total_days_impact": self.total_days_impact,
            "supplier_signed_by": self.supplier_signed_by,
            "supplier_signed_at": _iso(self.supplier_signed_at),
            "customer_signed_by": self.customer_signed_by,
            "customer_signed_at": _iso(self.customer_signed_at),
            "rejected_by": self.rejected_by,
            "rejected_at": _iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "certificate_number": self.certificate_number,
            "certificate_data": self.certificate_data,
            "applied_at": _iso(self.applied_at),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Variation {self.id}: {self.variation_ref} [{self.status}]>"


@event.listens_for(Variation, "before_update")
def _freeze_applied_variation(mapper, connection, target):
    """Refuse any write to the certificate or signatures of an applied variation."""
    state = sa_inspect(target)
    status_history = state.attrs.status.history
    previous = status_history.deleted[0] if status_history.deleted else target.status
    if previous != STATUS_APPLIED:
        return
    changed = [name for name in FROZEN_ON_APPLY if state.attrs[name].history.has_changes()]
    if changed:
        raise InvalidStateError(
            resource="Variation",
            resource_id=target.id,
            status=previous,
            attempted=f"modify {', '.join(changed)}",
        )


# ── VariationMilestone ───────────────────────────────────────────────────────


class VariationMilestone(db.Model):
    """
    Impact of a variation on one milestone.

    original_* is captured from the milestone baseline at add time;
    new_* is editable while the variation is draft/submitted;
    baseline_version_before/after are stamped by the apply engine.
    """

    __tablename__ = "variation_milestones"

    id = db.Column(db.Integer, primary_key=True)
    variation_id = db.Column(
        db.Integer,
        db.ForeignKey("variations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    milestone_id = db.Column(
        db.Integer,
        db.ForeignKey("milestones.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    baseline_version_before = db.Column(db.Integer, nullable=True)
    baseline_version_after = db.Column(db.Integer, nullable=True)

    original_baseline_cost = db.Column(db.Numeric(12, 2), nullable=True)
    new_baseline_cost = db.Column(db.Numeric(12, 2), nullable=True)
    original_baseline_start = db.Column(db.Date, nullable=True)
    new_baseline_start = db.Column(db.Date, nullable=True)
    original_baseline_end = db.Column(db.Date, nullable=True)
    new_baseline_end = db.Column(db.Date, nullable=True)

    change_rationale = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    milestone = db.relationship("Milestone")
    deliverable_changes = db.relationship(
        "VariationDeliverable",
        backref="variation_milestone",
        lazy="dynamic",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("variation_id", "milestone_id", name="uq_variation_milestone"),
    )

    @property
    def cost_delta(self):
        return (self.new_baseline_cost or 0) - (self.original_baseline_cost or 0)

    @property
    def days_delta(self) -> int:
        if self.original_baseline_end and self.new_baseline_end:
            return (self.new_baseline_end - self.original_baseline_end).days
        return 0

    def to_dict(self, include_milestone=False) -> dict:
        result = {
            "id": self.id,
            "variation_id": self.variation_id,
            "milestone_id": self.milestone_id,
            "baseline_version_before": self.baseline_version_before,
            "baseline_version_after": self.baseline_version_after,
            "original_baseline_cost": _money(self.original_baseline_cost),
            "new_baseline_cost": _money(self.new_baseline_cost),
            "original_baseline_start": _iso(self.original_baseline_start),
            "new_baseline_start": _iso(self.new_baseline_start),
            "original_baseline_end": _iso(self.original_baseline_end),
            "new_baseline_end": _iso(self.new_baseline_end),
            "change_rationale": self.change_rationale,
        }
        if include_milestone:
            m = self.milestone
            result["milestone"] = {
                "id": m.id,
                "milestone_ref": m.milestone_ref,
                "name": m.name,
                "billable": _money(m.billable),
                "baseline_start_date": _iso(m.baseline_start_date),
                "baseline_end_date": _iso(m.baseline_end_date),
            } if m else None
        return result

    def __repr__(self):
        return f"<VariationMilestone {self.id}: var={self.variation_id} ms={self.milestone_id}>"


# ── VariationDeliverable ─────────────────────────────────────────────────────


class VariationDeliverable(db.Model):
    """Deliverable adjustment attached to a variation (and optionally to one affected milestone)."""

    __tablename__ = "variation_deliverables"

    id = db.Column(db.Integer, primary_key=True)
    variation_id = db.Column(
        db.Integer,
        db.ForeignKey("variations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    variation_milestone_id = db.Column(
        db.Integer,
        db.ForeignKey("variation_milestones.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    change_type = db.Column(db.String(10), nullable=False, comment="add | remove | modify")
    deliverable_ref = db.Column(db.String(50), nullable=True)
    original_data = db.Column(db.JSON, nullable=True)
    new_data = db.Column(db.JSON, nullable=True)
    removal_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variation_id": self.variation_id,
            "variation_milestone_id": self.variation_milestone_id,
            "change_type": self.change_type,
            "deliverable_ref": self.deliverable_ref,
            "original_data": self.original_data,
            "new_data": self.new_data,
            "removal_reason": self.removal_reason,
        }

    def __repr__(self):
        return f"<VariationDeliverable {self.id}: {self.change_type} {self.deliverable_ref}>"


# ── MilestoneBaselineVersion ─────────────────────────────────────────────────


class MilestoneBaselineVersion(db.Model):
    """
    Immutable baseline revision of a milestone.

    Business rules:
    - Records are NEVER updated or deleted — append-only history.
    - version is gapless per milestone, starting at 1.
    - Signatures are copied from the variation at apply time so the
      history survives later edits of the variation row.
    """

    __tablename__ = "milestone_baseline_versions"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(
        db.Integer,
        db.ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    variation_id = db.Column(
        db.Integer,
        db.ForeignKey("variations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    baseline_start_date = db.Column(db.Date, nullable=True)
    baseline_end_date = db.Column(db.Date, nullable=True)
    baseline_billable = db.Column(db.Numeric(12, 2), nullable=True)

    supplier_signed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    supplier_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    customer_signed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    customer_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    variation = db.relationship("Variation")

    __table_args__ = (
        db.UniqueConstraint("milestone_id", "version", name="uq_baseline_version"),
    )

    def to_dict(self) -> dict:
        v = self.variation
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "version": self.version,
            "variation_id": self.variation_id,
            "variation": {"variation_ref": v.variation_ref, "title": v.title} if v else None,
            "baseline_start_date": _iso(self.baseline_start_date),
            "baseline_end_date": _iso(self.baseline_end_date),
            "baseline_billable": _money(self.baseline_billable),
            "supplier_signed_by": self.supplier_signed_by,
            "supplier_signed_at": _iso(self.supplier_signed_at),
            "customer_signed_by": self.customer_signed_by,
            "customer_signed_at": _iso(self.customer_signed_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<MilestoneBaselineVersion ms={self.milestone_id} v{self.version}>"


# ── ReferenceCounter ─────────────────────────────────────────────────────────


class ReferenceCounter(db.Model):
    """Last issued sequence number per (project, scope), bumped with a single UPDATE."""

    __tablename__ = "reference_counters"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    scope = db.Column(db.String(30), nullable=False, default="variation")
    last_value = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint("project_id", "scope", name="uq_reference_counter"),
    )

    def __repr__(self):
        return f"<ReferenceCounter project={self.project_id} {self.scope}={self.last_value}>"
