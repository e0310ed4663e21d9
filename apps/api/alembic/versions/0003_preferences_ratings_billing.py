"""consent preferences, ratings, analyzer config and billing tables

Revision ID: 0003
Revises: 0002
Create Date: 2026-10-14
"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision = "0003"
down_revision = "0002"
branch_labels = None
depends_on = None

CONSENT_AUDIT_FUNCTION = """
CREATE OR REPLACE FUNCTION log_consent_change() RETURNS trigger AS $$
BEGIN
    IF TG_OP = 'INSERT' OR NEW.enabled IS DISTINCT FROM OLD.enabled THEN
        INSERT INTO consent_audit_log (id, user_id, category, old_enabled, new_enabled)
        VALUES (
            gen_random_uuid(),
            NEW.user_id,
            NEW.category,
            CASE WHEN TG_OP = 'UPDATE' THEN OLD.enabled ELSE NULL END,
            NEW.enabled
        );
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

CONSENT_AUDIT_TRIGGER = """
CREATE TRIGGER consent_preferences_audit
AFTER INSERT OR UPDATE ON consent_preferences
FOR EACH ROW EXECUTE FUNCTION log_consent_change();
"""


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # -- consent --
    op.create_table(
        "consent_preferences",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "category"),
        sa.CheckConstraint(
            "category IN ('benchmarks', 'social_feed', 'directory', 'messaging')",
            name="ck_consent_preferences_category",
        ),
    )
    op.create_index("ix_consent_preferences_user_id", "consent_preferences", ["user_id"])

    op.create_table(
        "consent_audit_log",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("old_enabled", sa.Boolean(), nullable=True),
        sa.Column("new_enabled", sa.Boolean(), nullable=False),
        sa.Column(
            "changed_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.execute(CONSENT_AUDIT_FUNCTION)
    op.execute(CONSENT_AUDIT_TRIGGER)

    # -- ratings & analyzer config --
    op.create_table(
        "ai_ratings",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("response_id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("variant", sa.Text(), nullable=False, server_default="stars"),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column(
            "tags",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint(
            "(variant = 'thumbs' AND rating IN (-1, 1)) "
            "OR (variant = 'stars' AND rating BETWEEN 1 AND 5)",
            name="ck_ai_ratings_rating_range",
        ),
    )
    op.create_index("ix_ai_ratings_response", "ai_ratings", ["response_id"])
    op.create_index("ix_ai_ratings_user_id", "ai_ratings", ["user_id"])

    op.create_table(
        "analyzer_configs",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("analyzer", sa.Text(), nullable=False, unique=True),
        sa.Column("model", sa.Text(), nullable=False, server_default="gpt-4-turbo-preview"),
        sa.Column("temperature", sa.Numeric(), nullable=False, server_default="0.7"),
        sa.Column("max_tokens", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("dimension_weights", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("score_thresholds", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("custom_settings", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_timestamps(),
    )

    # -- billing --
    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False, unique=True),
        sa.Column("stripe_customer_id", sa.Text(), nullable=True),
        sa.Column("stripe_subscription_id", sa.Text(), nullable=True, unique=True),
        sa.Column("stripe_price_id", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="incomplete"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_user_subscriptions_customer", "user_subscriptions", ["stripe_customer_id"]
    )

    op.create_table(
        "stripe_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("stripe_event_id", sa.Text(), nullable=False, unique=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column(
            "payload_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )


def downgrade() -> None:
    op.drop_table("stripe_events")
    op.drop_index("ix_user_subscriptions_customer", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")
    op.drop_table("analyzer_configs")
    op.drop_index("ix_ai_ratings_user_id", table_name="ai_ratings")
    op.drop_index("ix_ai_ratings_response", table_name="ai_ratings")
    op.drop_table("ai_ratings")
    op.execute("DROP TRIGGER IF EXISTS consent_preferences_audit ON consent_preferences")
    op.execute("DROP FUNCTION IF EXISTS log_consent_change()")
    op.drop_table("consent_audit_log")
    op.drop_index("ix_consent_preferences_user_id", table_name="consent_preferences")
    op.drop_table("consent_preferences")
