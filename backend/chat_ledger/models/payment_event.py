from __future__ import annotations

from enum import Enum

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text, func

from chat_ledger.core.base import Base


class PaymentEventStatus(str, Enum):
    PENDING = "pending"
    CREDITED = "credited"
    FAILED = "failed"


class PaymentEvent(Base):
    """One row per externally verified payment (e.g. an on-chain transfer signature)."""

    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    payment_ref = Column(String(255), unique=True, nullable=False, index=True)
    network = Column(String(50), nullable=False)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount_minor_units = Column(BigInteger, nullable=False)
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=True)
    status = Column(String(20), nullable=False, server_default=PaymentEventStatus.PENDING.value)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
