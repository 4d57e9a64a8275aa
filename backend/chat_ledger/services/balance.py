from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chat_ledger.core.config import settings
from chat_ledger.models.ledger import ApiUsage, Balance, LedgerTransaction, TransactionType
from chat_ledger.services.ledger import AccountNotFoundError, TransactionProcessor

logger = logging.getLogger(__name__)


@dataclass
class BalanceSnapshot:
    balance: int
    locked: int
    currency: str

    @property
    def available(self) -> int:
        return self.balance - self.locked


@dataclass
class DailyUsage:
    date: date
    request_count: int
    total_tokens: int
    total_cost_minor_units: int
    models_used: dict[str, int] = field(default_factory=dict)


class BalanceService:
    """
    Named money operations for request handlers. Each credit/debit delegates to
    TransactionProcessor with a fixed transaction type; reads go straight to
    the store. All amounts are integer minor units.
    """

    DEFAULT_PAGE_SIZE = 50

    def __init__(self, db: Session, *, processor: TransactionProcessor | None = None) -> None:
        self.db = db
        self.processor = processor or TransactionProcessor(db)

    # --- Money movement ---

    def deposit(
        self,
        user_id: int,
        amount: int,
        description: str = "Deposit",
        metadata: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> LedgerTransaction:
        return self._credit(TransactionType.DEPOSIT, user_id, amount, description, metadata, idempotency_key)

    def charge(
        self,
        user_id: int,
        amount: int,
        description: str = "API usage",
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerTransaction:
        """
        Debit ``amount`` units. Raises InsufficientBalanceError (nothing written)
        when the balance cannot cover it. Reusing ``idempotency_key`` returns the
        original transaction instead of debiting twice.
        """
        amount = int(amount)
        if amount <= 0:
            raise ValueError("amount must be positive")
        return self.processor.process(
            user_id,
            TransactionType.USAGE,
            -amount,
            description,
            metadata,
            idempotency_key or _new_key(),
        )

    def refund(
        self,
        user_id: int,
        amount: int,
        description: str = "Refund",
        metadata: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> LedgerTransaction:
        return self._credit(TransactionType.REFUND, user_id, amount, description, metadata, idempotency_key)

    def bonus(
        self,
        user_id: int,
        amount: int,
        description: str = "Bonus",
        metadata: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> LedgerTransaction:
        return self._credit(TransactionType.BONUS, user_id, amount, description, metadata, idempotency_key)

    def _credit(
        self,
        txn_type: TransactionType,
        user_id: int,
        amount: int,
        description: str,
        metadata: dict[str, Any] | None,
        idempotency_key: str | None,
    ) -> LedgerTransaction:
        amount = int(amount)
        if amount <= 0:
            raise ValueError("amount must be positive")
        return self.processor.process(
            user_id,
            txn_type,
            amount,
            description,
            metadata,
            idempotency_key or _new_key(),
        )

    # --- Reads ---

    def get_balance(self, user_id: int) -> BalanceSnapshot:
        row = self.db.query(Balance).filter(Balance.user_id == user_id).first()
        if row is None:
            raise AccountNotFoundError(user_id)
        return BalanceSnapshot(
            balance=int(row.balance_minor_units),
            locked=int(row.locked_minor_units),
            currency=row.currency,
        )

    def get_transaction_history(
        self,
        user_id: int,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> list[LedgerTransaction]:
        normalized_limit = max(1, min(int(limit or self.DEFAULT_PAGE_SIZE), settings.LEDGER_HISTORY_MAX_PAGE_SIZE))
        normalized_offset = max(0, int(offset or 0))
        return (
            self.db.query(LedgerTransaction)
            .filter(LedgerTransaction.user_id == user_id)
            .order_by(LedgerTransaction.created_at.desc(), LedgerTransaction.id.desc())
            .offset(normalized_offset)
            .limit(normalized_limit)
            .all()
        )

    def get_transaction(self, transaction_id: str) -> LedgerTransaction | None:
        return self.db.get(LedgerTransaction, transaction_id)

    # --- Usage audit ---

    def record_api_usage(
        self,
        user_id: int,
        transaction_id: str | None,
        model: str,
        tokens_used: int,
        cost: int,
        metadata: dict[str, Any] | None = None,
    ) -> ApiUsage:
        """Write one api_usage row and commit. Raises on store errors."""
        record = ApiUsage(
            user_id=user_id,
            transaction_id=transaction_id,
            model=model,
            tokens_used=max(int(tokens_used or 0), 0),
            cost_minor_units=int(cost or 0),
            request_metadata=metadata,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def log_api_usage(
        self,
        user_id: int,
        transaction_id: str | None,
        model: str,
        tokens_used: int,
        cost: int,
        metadata: dict[str, Any] | None = None,
    ) -> ApiUsage | None:
        """
        Best-effort variant of record_api_usage. A failed audit write is logged
        and dropped; the ledger transaction it refers to is already committed.
        """
        try:
            return self.record_api_usage(user_id, transaction_id, model, tokens_used, cost, metadata)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "balance.audit_write_failed",
                extra={"user_id": user_id, "transaction_id": transaction_id, "model": model},
            )
            return None

    def get_usage_stats(self, user_id: int, days: int = 30) -> list[DailyUsage]:
        window_days = max(1, min(int(days or 30), settings.USAGE_STATS_MAX_DAYS))
        since = datetime.now(timezone.utc) - timedelta(days=window_days)
        rows = (
            self.db.query(ApiUsage)
            .filter(ApiUsage.user_id == user_id, ApiUsage.created_at > since)
            .all()
        )

        buckets: dict[date, DailyUsage] = {}
        model_counts: dict[date, Counter] = {}
        for row in rows:
            day = _utc_day(row.created_at)
            bucket = buckets.get(day)
            if bucket is None:
                bucket = buckets[day] = DailyUsage(
                    date=day,
                    request_count=0,
                    total_tokens=0,
                    total_cost_minor_units=0,
                )
                model_counts[day] = Counter()
            bucket.request_count += 1
            bucket.total_tokens += int(row.tokens_used or 0)
            bucket.total_cost_minor_units += int(row.cost_minor_units or 0)
            model_counts[day][row.model] += 1

        for day, bucket in buckets.items():
            bucket.models_used = dict(model_counts[day])
        return sorted(buckets.values(), key=lambda item: item.date, reverse=True)


def _new_key() -> str:
    return str(uuid.uuid4())


def _utc_day(value: datetime) -> date:
    # Naive timestamps are stored as UTC.
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()
