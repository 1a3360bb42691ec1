"""Project and Milestone domain models.

Milestones are owned by the delivery-tracking side of the application; the
variation engine only ever writes their baseline, forecast and billable
fields (see ``tracker.services.apply_engine``).
"""

from datetime import datetime, timezone

from tracker.models import db


def _money(value):
    return float(value) if value is not None else None


def _iso(value):
    return value.isoformat() if value else None


class Project(db.Model):
    """A contracted project; owns milestones and variations."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(
        db.String(50), nullable=False, unique=True,
        comment="Short contract code, used as certificate number prefix",
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(30), nullable=False, default="active")
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    milestones = db.relationship(
        "Milestone", backref="project", lazy="dynamic", cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        """Serialize core project fields for API responses."""
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.code}>"


# ── Milestone ────────────────────────────────────────────────────────────────


class Milestone(db.Model):
    """
    Payment milestone of a project.

    Three families of values:
      - baseline_*  — contractually agreed (changed only by applied variations)
      - forecast_*  — working forecast, edited by the delivery team
      - billable    — amount currently invoiced against the milestone
    """

    __tablename__ = "milestones"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    milestone_ref = db.Column(db.String(30), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.String(30), nullable=False, default="not_started",
        comment="not_started | in_progress | at_risk | delayed | completed",
    )

    # Working schedule
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    forecast_end_date = db.Column(db.Date, nullable=True)

    # Money
    billable = db.Column(db.Numeric(12, 2), nullable=True)
    forecast_billable = db.Column(db.Numeric(12, 2), nullable=True)

    # Contractual baseline
    baseline_start_date = db.Column(db.Date, nullable=True)
    baseline_end_date = db.Column(db.Date, nullable=True)
    baseline_billable = db.Column(db.Numeric(12, 2), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("project_id", "milestone_ref", name="uq_milestones_project_ref"),
    )

    def current_baseline(self) -> tuple:
        """Return (cost, start, end) of the agreed baseline.

        Milestones created before baselining fall back to the working values.
        """
        cost = self.baseline_billable if self.baseline_billable is not None else self.billable
        start = self.baseline_start_date or self.start_date
        end = self.baseline_end_date or self.end_date
        return cost, start, end

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "milestone_ref": self.milestone_ref,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "forecast_end_date": _iso(self.forecast_end_date),
            "billable": _money(self.billable),
            "forecast_billable": _money(self.forecast_billable),
            "baseline_start_date": _iso(self.baseline_start_date),
            "baseline_end_date": _iso(self.baseline_end_date),
            "baseline_billable": _money(self.baseline_billable),
        }

    def __repr__(self):
        return f"<Milestone {self.id}: {self.milestone_ref}>"
