"""
Identity models — User and ProjectMember.

Users are provisioned by the authentication layer in front of the tracker;
the engine only needs their id (signer / creator / rejector) and a display
name for certificates.  ProjectMember carries the per-project role that the
variation capability policy is built from.
"""

from datetime import datetime, timezone

from tracker.models import db

# ── Constants ─────────────────────────────────────────────────────────────────

PROJECT_ROLES = frozenset({"admin", "supplier_pm", "customer_pm", "viewer"})


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    status = db.Column(db.String(20), default="active")  # active, inactive
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    memberships = db.relationship(
        "ProjectMember", back_populates="user", cascade="all, delete-orphan", lazy="dynamic",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "status": self.status,
        }

    def __repr__(self) -> str:
        return f"<User {self.id}: {self.email}>"


class ProjectMember(db.Model):
    """Role of a user inside one project (admin | supplier_pm | customer_pm | viewer)."""

    __tablename__ = "project_members"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role = db.Column(
        db.String(30),
        nullable=False,
        default="viewer",
        comment="admin | supplier_pm | customer_pm | viewer",
    )
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    user = db.relationship("User", back_populates="memberships")

    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role": self.role,
        }

    def __repr__(self) -> str:
        return f"<ProjectMember project={self.project_id} user={self.user_id} {self.role}>"
