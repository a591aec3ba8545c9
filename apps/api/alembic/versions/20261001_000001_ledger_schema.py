"""create ledger schema

Revision ID: 20261001_000001
Revises:
Create Date: 2026-10-01 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261001_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "identities",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_identities_email"), "identities", ["email"], unique=False)

    op.create_table(
        "user_ledgers",
        sa.Column("uid", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("plan", sa.String(), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=True),
        sa.Column("max_credits", sa.Integer(), nullable=True),
        sa.Column("last_monthly_grant", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_generations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_generation_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_slot_acquired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_free_onboarding_generation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("uid"),
        sa.CheckConstraint("credits IS NULL OR credits >= 0", name="ck_user_ledgers_credits_non_negative"),
        sa.CheckConstraint("active_generations >= 0", name="ck_user_ledgers_active_generations_non_negative"),
    )
    op.create_index(
        op.f("ix_user_ledgers_last_slot_acquired_at"),
        "user_ledgers",
        ["last_slot_acquired_at"],
        unique=False,
    )

    op.create_table(
        "subscriptions",
        sa.Column("uid", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("plan", sa.String(), nullable=False),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("original_transaction_id", sa.String(), nullable=False),
        sa.Column("last_credit_grant", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("uid"),
    )
    op.create_index(op.f("ix_subscriptions_expires_date"), "subscriptions", ["expires_date"], unique=False)
    op.create_index(op.f("ix_subscriptions_status"), "subscriptions", ["status"], unique=False)

    op.create_table(
        "processed_transactions",
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("uid", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("credits_granted", sa.Integer(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("transaction_id"),
    )
    op.create_index(op.f("ix_processed_transactions_uid"), "processed_transactions", ["uid"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_processed_transactions_uid"), table_name="processed_transactions")
    op.drop_table("processed_transactions")
    op.drop_index(op.f("ix_subscriptions_status"), table_name="subscriptions")
    op.drop_index(op.f("ix_subscriptions_expires_date"), table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index(op.f("ix_user_ledgers_last_slot_acquired_at"), table_name="user_ledgers")
    op.drop_table("user_ledgers")
    op.drop_index(op.f("ix_identities_email"), table_name="identities")
    op.drop_table("identities")
