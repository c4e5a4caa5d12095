# ruff: noqa: I001
"""Reconciliation core table.

Revision ID: 0001_lr_core
Revises: None
Create Date: 2026-10-17
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_lr_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "lr_transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("currency_code", sa.CHAR(3), nullable=True),
        sa.Column("date", sa.Date(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("attributes", sa.JSON(), nullable=False),
        sa.Column("match_target_id", sa.String(), nullable=True),
        sa.Column("match_method", sa.String(), nullable=True),
        sa.Column("match_confidence", sa.Numeric(5, 4), nullable=True),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.CheckConstraint(
            "match_confidence IS NULL OR (match_confidence >= 0 AND match_confidence <= 1)",
            name="ck_lr_tx_match_confidence_range",
        ),
        sa.CheckConstraint(
            "(match_method IS NULL AND matched_at IS NULL) "
            "OR (match_method IS NOT NULL AND matched_at IS NOT NULL)",
            name="ck_lr_tx_match_method_matched_at",
        ),
    )
    # Equality and range lookups used by paged fetches and identity matching
    op.create_index("ix_lr_tx_source_date", "lr_transactions", ["source", "date"])
    op.create_index("ix_lr_tx_customer_email", "lr_transactions", ["customer_email"])
    op.create_index("ix_lr_tx_external_id", "lr_transactions", ["external_id"])
    op.create_index("ix_lr_tx_match_target_id", "lr_transactions", ["match_target_id"])


def downgrade() -> None:
    op.drop_index("ix_lr_tx_match_target_id", table_name="lr_transactions")
    op.drop_index("ix_lr_tx_external_id", table_name="lr_transactions")
    op.drop_index("ix_lr_tx_customer_email", table_name="lr_transactions")
    op.drop_index("ix_lr_tx_source_date", table_name="lr_transactions")
    op.drop_table("lr_transactions")
