"""initial schema

Revision ID: 202510170900
Revises:
Create Date: 2025-10-17 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202510170900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("provider_name", sa.String(length=120), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("monthly", "quarterly", "annually", name="frequency"),
            nullable=False,
        ),
        sa.Column("anchor_payment_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_subscription_amount_positive"),
    )
    op.create_index(
        "ix_subscriptions_user_anchor",
        "subscriptions",
        ["user_id", "anchor_payment_date"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("origin_payment_id", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_origin_payment_id", "transactions", ["origin_payment_id"]
    )

    op.create_table(
        "subscription_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "subscription_id",
            sa.Integer(),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
        ),
        sa.Column("provider_name", sa.String(length=120), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("original_payment_date", sa.Date(), nullable=False),
        sa.Column("projected_payment_date", sa.Date(), nullable=False),
        sa.Column(
            "payment_status",
            sa.Enum("unpaid", "paid", "failed", name="paymentstatus"),
            nullable=False,
            server_default="unpaid",
        ),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "subscription_id",
            "projected_payment_date",
            name="uq_payment_subscription_date",
        ),
        sa.CheckConstraint(
            "(payment_status = 'paid' AND transaction_id IS NOT NULL "
            "AND paid_at IS NOT NULL) OR (payment_status != 'paid' "
            "AND transaction_id IS NULL AND paid_at IS NULL)",
            name="ck_payment_paid_has_transaction",
        ),
    )
    op.create_index(
        "ix_payments_user_status_date",
        "subscription_payments",
        ["user_id", "payment_status", "projected_payment_date"],
    )

    op.create_table(
        "currency_exchange_rates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("base_currency", sa.String(length=3), nullable=False),
        sa.Column("target_currency", sa.String(length=3), nullable=False),
        sa.Column("rate", sa.String(length=40), nullable=False),
        sa.Column("last_updated", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "base_currency", "target_currency", name="uq_exchange_rate_pair"
        ),
    )

    op.create_table(
        "reconciliation_issues",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "reason",
            sa.Enum(
                "rollback_failed", "orphaned_transaction", name="issuereason"
            ),
            nullable=False,
        ),
        sa.Column("payment_id", sa.Integer()),
        sa.Column("transaction_id", sa.Integer()),
        sa.Column("detail", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime()),
    )
    op.create_index(
        "ix_reconciliation_issues_user_open",
        "reconciliation_issues",
        ["user_id", "resolved_at"],
    )


def downgrade():
    op.drop_index(
        "ix_reconciliation_issues_user_open", table_name="reconciliation_issues"
    )
    op.drop_table("reconciliation_issues")
    op.drop_table("currency_exchange_rates")
    op.drop_index("ix_payments_user_status_date", table_name="subscription_payments")
    op.drop_table("subscription_payments")
    op.drop_index("ix_transactions_origin_payment_id", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_subscriptions_user_anchor", table_name="subscriptions")
    op.drop_table("subscriptions")
