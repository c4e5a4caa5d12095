from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    CHAR,
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------
# Core: lr_transactions
# ---------------------------


class LrTransaction(Base):
    """One observed financial event from one source feed.

    Rows are written by upstream ingestion. Reconciliation only updates
    ``attributes`` (merge, never replace) and the ``match_*`` columns.
    """

    __tablename__ = "lr_transactions"
    __table_args__ = (
        CheckConstraint(
            "match_confidence IS NULL OR (match_confidence >= 0 AND match_confidence <= 1)",
            name="ck_lr_tx_match_confidence_range",
        ),
        CheckConstraint(
            "(match_method IS NULL AND matched_at IS NULL) "
            "OR (match_method IS NOT NULL AND matched_at IS NOT NULL)",
            name="ck_lr_tx_match_method_matched_at",
        ),
        Index("ix_lr_tx_source_date", "source", "date"),
        Index("ix_lr_tx_customer_email", "customer_email"),
        Index("ix_lr_tx_external_id", "external_id"),
        Index("ix_lr_tx_match_target_id", "match_target_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    source: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency_code: Mapped[str | None] = mapped_column(CHAR(3), nullable=True)
    date: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Open, source-specific side attributes (settlement date, merchant account, ...)
    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    match_target_id: Mapped[str | None] = mapped_column(String, nullable=True)
    match_method: Mapped[str | None] = mapped_column(String, nullable=True)
    match_confidence: Mapped[Decimal | None] = mapped_column(Numeric(5, 4), nullable=True)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
