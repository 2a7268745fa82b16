"""Payments database models.

This DB is the source of truth for local transaction state and for the payment
methods customers asked us to remember.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from zwpay.common.db import Base


class Transaction(Base):
    """One provider intent or charge and its local status."""

    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_tx_status_created_at", "tx_status", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    internal_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    payment_intent_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    tx_status: Mapped[str] = mapped_column(String, index=True)
    customer_id: Mapped[str] = mapped_column(String, index=True)
    save_payment_method: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    # `metadata` is reserved on declarative classes, so the attribute is renamed.
    meta: Mapped[dict | None] = mapped_column(
        "metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=True
    )


class PaymentMethod(Base):
    """Remembered payment method; one row per (customer, payment method)."""

    __tablename__ = "payment_methods"

    customer_id: Mapped[str] = mapped_column(String, primary_key=True)
    payment_method_id: Mapped[str] = mapped_column(String, primary_key=True)
    pm_provider: Mapped[str] = mapped_column(String)
    method_type: Mapped[str | None] = mapped_column(String, nullable=True)
    pm_status: Mapped[str] = mapped_column(String, default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
