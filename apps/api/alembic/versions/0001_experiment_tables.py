"""experiment and promotion tables

Revision ID: 0001
Revises:
Create Date: 2026-10-12
"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "ab_experiments",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.Text(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=True),
        _created_at(),
    )

    op.create_table(
        "ab_variants",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("experiment_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("variant_name", sa.Text(), nullable=False),
        sa.Column("traffic_percentage", sa.Numeric(), nullable=False, server_default="0"),
        sa.Column("is_winner", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "config_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _created_at(),
        sa.ForeignKeyConstraint(["experiment_id"], ["ab_experiments.id"]),
        sa.UniqueConstraint("experiment_id", "variant_name"),
    )

    op.create_table(
        "ab_variant_requests",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("variant_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=True),
        sa.Column("latency_ms", sa.Float(), nullable=True),
        sa.Column("is_error", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("converted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.ForeignKeyConstraint(["variant_id"], ["ab_variants.id"]),
    )
    op.create_index(
        "ix_ab_variant_requests_variant_created",
        "ab_variant_requests",
        ["variant_id", "created_at"],
    )

    op.create_table(
        "experiment_promotions",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("experiment_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("promoted_variant_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("promoted_variant_name", sa.Text(), nullable=False),
        sa.Column("promotion_type", sa.Text(), nullable=False, server_default="manual"),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("confidence_level", sa.Numeric(), nullable=False, server_default="0"),
        sa.Column("improvement_percent", sa.Numeric(), nullable=False, server_default="0"),
        sa.Column("promoted_by", sa.Text(), nullable=True),
        sa.Column("promoted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "previous_allocation_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "metadata_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("rollback_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rollback_reason", sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["experiment_id"], ["ab_experiments.id"]),
        sa.ForeignKeyConstraint(["promoted_variant_id"], ["ab_variants.id"]),
    )
    op.create_index(
        "ix_experiment_promotions_experiment_promoted",
        "experiment_promotions",
        ["experiment_id", "promoted_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_experiment_promotions_experiment_promoted", table_name="experiment_promotions")
    op.drop_table("experiment_promotions")
    op.drop_index("ix_ab_variant_requests_variant_created", table_name="ab_variant_requests")
    op.drop_table("ab_variant_requests")
    op.drop_table("ab_variants")
    op.drop_table("ab_experiments")
