"""progress_engine_tables

Create `projects`, `work_items`, `evidence_records` and `email_logs`.

Revision ID: 5d1e7a2c9b40
Revises:
Create Date: 2026-10-19 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5d1e7a2c9b40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("location", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="not_started"),
            sa.Column("target_date", sa.Date(), nullable=True),
            sa.Column("manager_name", sa.String(length=150), nullable=True),
            sa.Column("manager_email", sa.String(length=255), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if "work_items" not in existing_tables:
        op.create_table(
            "work_items",
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_phase", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("parent_phase_id", sa.String(length=36), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="not_started"),
            sa.Column("completion_percentage", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("estimated_cost", sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("assigned_to", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("project_id", "id"),
        )
        op.create_index("ix_work_items_parent_phase_id", "work_items", ["parent_phase_id"])
        op.create_index("ix_work_items_project_parent", "work_items",
                        ["project_id", "parent_phase_id"])

    if "evidence_records" not in existing_tables:
        op.create_table(
            "evidence_records",
            sa.Column("update_group_id", sa.String(length=36), nullable=False),
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.String(length=36), nullable=False),
            sa.Column("file_url", sa.String(length=1000), nullable=True),
            sa.Column("caption", sa.String(length=500), nullable=True),
            sa.Column("confirmation_status", sa.String(length=20), nullable=False,
                      server_default="pending"),
            sa.Column("ai_suggested_percentage", sa.Float(), nullable=True),
            sa.Column("user_input_percentage", sa.Float(), nullable=True),
            sa.Column("confirmed_by", sa.String(length=150), nullable=True),
            sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("update_group_id", "id"),
        )
        op.create_index("ix_evidence_records_project_id", "evidence_records", ["project_id"])
        op.create_index("ix_evidence_records_task_id", "evidence_records", ["task_id"])

    if "email_logs" not in existing_tables:
        op.create_table(
            "email_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("recipient_name", sa.String(length=150), nullable=True),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("template_name", sa.String(length=100), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("work_item_id", sa.String(length=36), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_email_logs_recipient_email", "email_logs", ["recipient_email"])
        op.create_index("ix_email_logs_project_id", "email_logs", ["project_id"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "email_logs" in existing_tables:
        op.drop_index("ix_email_logs_project_id", table_name="email_logs")
        op.drop_index("ix_email_logs_recipient_email", table_name="email_logs")
        op.drop_table("email_logs")
    if "evidence_records" in existing_tables:
        op.drop_index("ix_evidence_records_task_id", table_name="evidence_records")
        op.drop_index("ix_evidence_records_project_id", table_name="evidence_records")
        op.drop_table("evidence_records")
    if "work_items" in existing_tables:
        op.drop_index("ix_work_items_project_parent", table_name="work_items")
        op.drop_index("ix_work_items_parent_phase_id", table_name="work_items")
        op.drop_table("work_items")
    if "projects" in existing_tables:
        op.drop_table("projects")
