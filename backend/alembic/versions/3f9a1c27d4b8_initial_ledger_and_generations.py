"""initial_ledger_and_generations

Revision ID: 3f9a1c27d4b8
Revises:
Create Date: 2026-10-19 09:12:41.208113

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c27d4b8"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

generation_status = sa.Enum("PENDING", "PROCESSING", "COMPLETED", "FAILED", name="generationstatus")
vendor_tool = sa.Enum("SORA2", "VEO3", "LIPSYNC", "INFINITETALK", "NANOBANANA", name="vendortool")
transaction_kind = sa.Enum("DEDUCT", "REFUND", "RESERVE", "RELEASE", name="credittransactionkind")


def upgrade() -> None:
    """Create accounts, reservations, generations and the credit journal."""
    op.create_table(
        "accounts",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("subscription_credits", sa.Integer(), nullable=False),
        sa.Column("extra_credits", sa.Integer(), nullable=False),
        sa.Column("subscription_status", sqlmodel.sql.sqltypes.AutoString(length=32), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        # Pools never go negative, whatever the writer
        sa.CheckConstraint("subscription_credits >= 0", name="ck_accounts_subscription_nonneg"),
        sa.CheckConstraint("extra_credits >= 0", name="ck_accounts_extras_nonneg"),
    )

    op.create_table(
        "credit_reservations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("subscription_remaining", sa.Integer(), nullable=False),
        sa.Column("extras_remaining", sa.Integer(), nullable=False),
        sa.Column("reason", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("released_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_credit_reservations_account_id"), "credit_reservations", ["account_id"]
    )
    # Expiry sweep only looks at open reservations
    op.create_index(
        "idx_credit_reservations_open_expiry",
        "credit_reservations",
        ["expires_at"],
        postgresql_where=sa.text("released_at IS NULL"),
    )

    op.create_table(
        "generations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("tool", vendor_tool, nullable=False),
        sa.Column("status", generation_status, nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("debited_subscription", sa.Integer(), nullable=True),
        sa.Column("debited_extras", sa.Integer(), nullable=True),
        sa.Column("reservation_id", sa.Uuid(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(), nullable=True),
        sa.Column(
            "external_task_handle", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True
        ),
        sa.Column("request_parameters", sa.JSON(), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=True),
        sa.Column("result_url", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("original_result_url", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("result_metadata", sa.JSON(), nullable=True),
        sa.Column("last_error", sqlmodel.sql.sqltypes.AutoString(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["owner_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["reservation_id"], ["credit_reservations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_generations_owner_id"), "generations", ["owner_id"])
    op.create_index(op.f("ix_generations_tool"), "generations", ["tool"])
    op.create_index(op.f("ix_generations_status"), "generations", ["status"])
    op.create_index(op.f("ix_generations_created_at"), "generations", ["created_at"])
    op.create_index(
        op.f("ix_generations_external_task_handle"), "generations", ["external_task_handle"]
    )
    # Sweep batch: oldest in-flight first
    op.create_index(
        "idx_generations_in_flight",
        "generations",
        ["created_at"],
        postgresql_where=sa.text("status IN ('PENDING', 'PROCESSING')"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("kind", transaction_kind, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("subscription_delta", sa.Integer(), nullable=False),
        sa.Column("extras_delta", sa.Integer(), nullable=False),
        sa.Column("reason", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("generation_id", sa.Uuid(), nullable=True),
        sa.Column("reservation_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_credit_transactions_account_id"), "credit_transactions", ["account_id"]
    )
    op.create_index(
        op.f("ix_credit_transactions_generation_id"), "credit_transactions", ["generation_id"]
    )
    op.create_index(
        op.f("ix_credit_transactions_reservation_id"), "credit_transactions", ["reservation_id"]
    )


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_table("credit_transactions")
    op.drop_table("generations")
    op.drop_table("credit_reservations")
    op.drop_table("accounts")

    bind = op.get_bind()
    transaction_kind.drop(bind, checkfirst=True)
    vendor_tool.drop(bind, checkfirst=True)
    generation_status.drop(bind, checkfirst=True)
