"""variation_engine_initial

Create identity, project/milestone and variation tables:
users, projects, project_members, milestones, variations,
variation_milestones, variation_deliverables, milestone_baseline_versions,
reference_counters.

Revision ID: 7e1a9c3d5b20
Revises:
Create Date: 2026-10-19 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7e1a9c3d5b20"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True, server_default="active"),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if "project_members" not in existing_tables:
        op.create_table(
            "project_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=30), nullable=False, server_default="viewer"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
        )
        op.create_index("ix_project_members_project_id", "project_members", ["project_id"])
        op.create_index("ix_project_members_user_id", "project_members", ["user_id"])

    if "milestones" not in existing_tables:
        op.create_table(
            "milestones",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("milestone_ref", sa.String(length=30), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="not_started"),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("forecast_end_date", sa.Date(), nullable=True),
            sa.Column("billable", sa.Numeric(12, 2), nullable=True),
            sa.Column("forecast_billable", sa.Numeric(12, 2), nullable=True),
            sa.Column("baseline_start_date", sa.Date(), nullable=True),
            sa.Column("baseline_end_date", sa.Date(), nullable=True),
            sa.Column("baseline_billable", sa.Numeric(12, 2), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "milestone_ref", name="uq_milestones_project_ref"),
        )
        op.create_index("ix_milestones_project_id", "milestones", ["project_id"])

    if "variations" not in existing_tables:
        op.create_table(
            "variations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("variation_ref", sa.String(length=20), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("variation_type", sa.String(length=30), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("contract_terms_reference", sa.Text(), nullable=True),
            sa.Column("impact_summary", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="draft"),
            sa.Column("form_step", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("form_data", sa.JSON(), nullable=True),
            sa.Column("total_cost_impact", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("total_days_impact", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("supplier_signed_by", sa.Integer(), nullable=True),
            sa.Column("supplier_signed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("customer_signed_by", sa.Integer(), nullable=True),
            sa.Column("customer_signed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejected_by", sa.Integer(), nullable=True),
            sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("certificate_number", sa.String(length=120), nullable=True),
            sa.Column("certificate_data", sa.JSON(), nullable=True),
            sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["supplier_signed_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["customer_signed_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["rejected_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "variation_ref", name="uq_variations_project_ref"),
        )
        op.create_index("ix_variations_project_id", "variations", ["project_id"])
        op.create_index("ix_variations_status", "variations", ["status"])
        op.create_index("ix_variations_created_at", "variations", ["created_at"])

    if "variation_milestones" not in existing_tables:
        op.create_table(
            "variation_milestones",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("variation_id", sa.Integer(), nullable=False),
            sa.Column("milestone_id", sa.Integer(), nullable=True),
            sa.Column("baseline_version_before", sa.Integer(), nullable=True),
            sa.Column("baseline_version_after", sa.Integer(), nullable=True),
            sa.Column("original_baseline_cost", sa.Numeric(12, 2), nullable=True),
            sa.Column("new_baseline_cost", sa.Numeric(12, 2), nullable=True),
            sa.Column("original_baseline_start", sa.Date(), nullable=True),
            sa.Column("new_baseline_start", sa.Date(), nullable=True),
            sa.Column("original_baseline_end", sa.Date(), nullable=True),
            sa.Column("new_baseline_end", sa.Date(), nullable=True),
            sa.Column("change_rationale", sa.Text(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["variation_id"], ["variations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["milestone_id"], ["milestones.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("variation_id", "milestone_id", name="uq_variation_milestone"),
        )
        op.create_index("ix_variation_milestones_variation_id", "variation_milestones", ["variation_id"])
        op.create_index("ix_variation_milestones_milestone_id", "variation_milestones", ["milestone_id"])

    if "variation_deliverables" not in existing_tables:
        op.create_table(
            "variation_deliverables",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("variation_id", sa.Integer(), nullable=False),
            sa.Column("variation_milestone_id", sa.Integer(), nullable=True),
            sa.Column("change_type", sa.String(length=10), nullable=False),
            sa.Column("deliverable_ref", sa.String(length=50), nullable=True),
            sa.Column("original_data", sa.JSON(), nullable=True),
            sa.Column("new_data", sa.JSON(), nullable=True),
            sa.Column("removal_reason", sa.Text(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["variation_id"], ["variations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(
                ["variation_milestone_id"], ["variation_milestones.id"], ondelete="CASCADE",
            ),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_variation_deliverables_variation_id", "variation_deliverables", ["variation_id"])
        op.create_index(
            "ix_variation_deliverables_variation_milestone_id",
            "variation_deliverables",
            ["variation_milestone_id"],
        )

    if "milestone_baseline_versions" not in existing_tables:
        op.create_table(
            "milestone_baseline_versions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("milestone_id", sa.Integer(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("variation_id", sa.Integer(), nullable=True),
            sa.Column("baseline_start_date", sa.Date(), nullable=True),
            sa.Column("baseline_end_date", sa.Date(), nullable=True),
            sa.Column("baseline_billable", sa.Numeric(12, 2), nullable=True),
            sa.Column("supplier_signed_by", sa.Integer(), nullable=True),
            sa.Column("supplier_signed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("customer_signed_by", sa.Integer(), nullable=True),
            sa.Column("customer_signed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["milestone_id"], ["milestones.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["variation_id"], ["variations.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["supplier_signed_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["customer_signed_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("milestone_id", "version", name="uq_baseline_version"),
        )
        op.create_index(
            "ix_milestone_baseline_versions_milestone_id", "milestone_baseline_versions", ["milestone_id"],
        )
        op.create_index(
            "ix_milestone_baseline_versions_variation_id", "milestone_baseline_versions", ["variation_id"],
        )

    if "reference_counters" not in existing_tables:
        op.create_table(
            "reference_counters",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("scope", sa.String(length=30), nullable=False, server_default="variation"),
            sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "scope", name="uq_reference_counter"),
        )


def downgrade():
    for table in (
        "reference_counters",
        "milestone_baseline_versions",
        "variation_deliverables",
        "variation_milestones",
        "variations",
        "milestones",
        "project_members",
        "projects",
        "users",
    ):
        op.drop_table(table)
