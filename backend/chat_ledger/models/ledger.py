from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chat_ledger.core.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_transaction_id() -> str:
    return str(uuid.uuid4())


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"

    @property
    def is_credit(self) -> bool:
        return self is not TransactionType.USAGE


class TransactionStatus(str, Enum):
    COMPLETED = "completed"


class Balance(Base):
    """
    Spendable funds for one user, in minor units (1 unit = $0.001).
    Only TransactionProcessor writes to this table after the row is created.
    """

    __tablename__ = "balances"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    balance_minor_units = Column(BigInteger, nullable=False, server_default="0", default=0)
    locked_minor_units = Column(BigInteger, nullable=False, server_default="0", default=0)
    currency = Column(String(10), nullable=False, server_default="usd", default="usd")
    # Bumped on every UPDATE; a stale read fails the flush instead of overwriting.
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    user = relationship("User", back_populates="balance")

    __table_args__ = (
        CheckConstraint("locked_minor_units >= 0", name="ck_balances_locked_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version}


class LedgerTransaction(Base):
    """Append-only audit row. Never updated or deleted once committed."""

    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_new_transaction_id)
    user_id = Column(
        Integer,
        ForeignKey("balances.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type = Column(String(20), nullable=False)
    amount_minor_units = Column(BigInteger, nullable=False)
    balance_before_minor_units = Column(BigInteger, nullable=False)
    balance_after_minor_units = Column(BigInteger, nullable=False)
    description = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes, so the attribute is named details.
    details = Column("metadata", JSON, nullable=True)
    idempotency_key = Column(String(255), nullable=False)
    status = Column(
        String(20),
        nullable=False,
        server_default=TransactionStatus.COMPLETED.value,
        default=TransactionStatus.COMPLETED.value,
    )
    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=_utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_transactions_idempotency_key"),
        CheckConstraint("amount_minor_units <> 0", name="ck_transactions_amount_non_zero"),
        CheckConstraint(
            "balance_after_minor_units = balance_before_minor_units + amount_minor_units",
            name="ck_transactions_snapshot_consistent",
        ),
        Index("ix_transactions_user_id_created_at", "user_id", "created_at"),
    )


class ApiUsage(Base):
    """Secondary audit sink for metered provider calls; not part of the atomic core."""

    __tablename__ = "api_usage"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=True, index=True)
    model = Column(String(255), nullable=False)
    tokens_used = Column(Integer, nullable=False, server_default="0", default=0)
    cost_minor_units = Column(BigInteger, nullable=False, server_default="0", default=0)
    request_metadata = Column(JSON, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=_utcnow,
        nullable=False,
        index=True,
    )
