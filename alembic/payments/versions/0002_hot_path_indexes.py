"""add pending-poll index for transactions

Revision ID: 0002_hot_path_indexes
Revises: 0001_payments
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_hot_path_indexes"
down_revision = "0001_payments"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_transactions_tx_status_created_at",
        "transactions",
        ["tx_status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_transactions_tx_status_created_at", table_name="transactions")
