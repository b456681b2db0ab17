"""credit metering schema: wallets, ledger, usage counters, ai sessions, plan sources

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_wallets",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("balance_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("case_id", sa.String(), nullable=True),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credit_ledger_user_id", "credit_ledger", ["user_id"], unique=False)
    op.create_index("ix_credit_ledger_case_id", "credit_ledger", ["case_id"], unique=False)
    op.create_index("ix_credit_ledger_idempotency_key", "credit_ledger", ["idempotency_key"], unique=False)
    op.create_index("ix_credit_ledger_created_at", "credit_ledger", ["created_at"], unique=False)
    op.create_index(
        "ix_credit_ledger_user_action_created",
        "credit_ledger",
        ["user_id", "action_type", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_credit_ledger_user_action_key",
        "credit_ledger",
        ["user_id", "action_type", "idempotency_key"],
        unique=False,
    )

    op.create_table(
        "usage_counters_monthly",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("ym", sa.String(), nullable=False),
        sa.Column("cases_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ai_sessions_started", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "ym", name="uq_usage_counters_monthly_user_ym"),
    )
    op.create_index("ix_usage_counters_monthly_user_id", "usage_counters_monthly", ["user_id"], unique=False)

    op.create_table(
        "ai_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("case_id", sa.String(), nullable=False),
        sa.Column("ym", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_messages", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_idempotency_key", sa.String(), nullable=True),
        sa.Column("last_result", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ai_sessions_user_id", "ai_sessions", ["user_id"], unique=False)
    op.create_index(
        "ix_ai_sessions_user_case_active",
        "ai_sessions",
        ["user_id", "case_id", "is_active"],
        unique=False,
    )

    op.create_table(
        "subscriptions_state",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("plan", sa.String(), nullable=False, server_default="free"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("monthly_case_limit", sa.Integer(), nullable=True),
        sa.Column("monthly_credit_refill", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "plan_overrides",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("plan_code", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_plan_overrides_user_id", "plan_overrides", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_plan_overrides_user_id", table_name="plan_overrides")
    op.drop_table("plan_overrides")
    op.drop_table("subscriptions_state")
    op.drop_index("ix_ai_sessions_user_case_active", table_name="ai_sessions")
    op.drop_index("ix_ai_sessions_user_id", table_name="ai_sessions")
    op.drop_table("ai_sessions")
    op.drop_index("ix_usage_counters_monthly_user_id", table_name="usage_counters_monthly")
    op.drop_table("usage_counters_monthly")
    op.drop_index("ix_credit_ledger_user_action_key", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_user_action_created", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_created_at", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_idempotency_key", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_case_id", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_user_id", table_name="credit_ledger")
    op.drop_table("credit_ledger")
