from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from chat_ledger.core.config import settings
from chat_ledger.models.ledger import Balance, LedgerTransaction, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base error for balance-affecting operations."""


class AccountNotFoundError(LedgerError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"Balance not found for user {user_id}")
        self.user_id = user_id


class InsufficientBalanceError(LedgerError):
    def __init__(self, *, required: int, available: int) -> None:
        super().__init__("Insufficient balance")
        self.required = required
        self.available = available


class StorageFailureError(LedgerError):
    """Transient store failure. Safe to retry with the same idempotency key."""


class IdempotencyKeyConflictError(LedgerError):
    """The key is already bound to a different user, type or amount."""


class TransactionProcessor:
    """
    The only writer to balances + transactions.

    Every call runs as one database transaction: replay by idempotency key,
    lock the balance row, check sufficiency, write the new balance and the
    ledger row, commit. Row locks serialize writers on PostgreSQL; the balance
    version column catches stale reads everywhere else and the attempt is
    retried from scratch.
    """

    def __init__(self, db: Session, *, max_retries: int | None = None) -> None:
        self.db = db
        self.max_retries = max(1, settings.LEDGER_MAX_RETRIES if max_retries is None else max_retries)

    def process(
        self,
        user_id: int,
        type: TransactionType | str,
        amount_minor_units: int,
        description: str | None,
        metadata: dict[str, Any] | None,
        idempotency_key: str,
    ) -> LedgerTransaction:
        txn_type = _normalize_type(type)
        amount = int(amount_minor_units)
        _validate_amount(txn_type, amount)
        key = (idempotency_key or "").strip()
        if not key:
            raise ValueError("idempotency_key is required")
        normalized_description = description.strip() if isinstance(description, str) and description.strip() else None

        attempt = 0
        while True:
            attempt += 1
            try:
                return self._apply(
                    user_id=user_id,
                    txn_type=txn_type,
                    amount=amount,
                    description=normalized_description,
                    metadata=metadata,
                    key=key,
                )
            except StaleDataError as exc:
                self.db.rollback()
                logger.warning(
                    "ledger.version_conflict",
                    extra={"user_id": user_id, "idempotency_key": key, "attempt": attempt},
                )
                if attempt >= self.max_retries:
                    raise StorageFailureError("Balance changed concurrently; retry the operation") from exc
            except IntegrityError as exc:
                self.db.rollback()
                existing = self._find_by_idempotency(key)
                if existing is None:
                    logger.exception("Ledger write rejected for user_id=%s", user_id)
                    raise StorageFailureError("Ledger write rejected by the store") from exc
                # Another request committed the same key first.
                return self._replay(existing, user_id=user_id, txn_type=txn_type, amount=amount)
            except LedgerError:
                self.db.rollback()
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Ledger store failure for user_id=%s", user_id)
                raise StorageFailureError(str(exc)) from exc

    def _apply(
        self,
        *,
        user_id: int,
        txn_type: TransactionType,
        amount: int,
        description: str | None,
        metadata: dict[str, Any] | None,
        key: str,
    ) -> LedgerTransaction:
        existing = self._find_by_idempotency(key)
        if existing is not None:
            return self._replay(existing, user_id=user_id, txn_type=txn_type, amount=amount)

        balance = self._lock_balance(user_id)
        if balance is None:
            raise AccountNotFoundError(user_id)

        # A same-key writer may have committed while we waited on the row lock.
        existing = self._find_by_idempotency(key)
        if existing is not None:
            return self._replay(existing, user_id=user_id, txn_type=txn_type, amount=amount)

        before = int(balance.balance_minor_units or 0)
        after = before + amount
        if amount < 0 and after < 0:
            logger.info(
                "ledger.insufficient_balance",
                extra={"user_id": user_id, "required": -amount, "available": before},
            )
            raise InsufficientBalanceError(required=-amount, available=before)

        entry = LedgerTransaction(
            user_id=user_id,
            type=txn_type.value,
            amount_minor_units=amount,
            balance_before_minor_units=before,
            balance_after_minor_units=after,
            description=description,
            details=metadata,
            idempotency_key=key,
            status=TransactionStatus.COMPLETED.value,
            created_at=datetime.now(timezone.utc),
        )
        balance.balance_minor_units = after
        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)

        logger.info(
            "ledger.transaction_committed",
            extra={
                "user_id": user_id,
                "transaction_id": entry.id,
                "type": txn_type.value,
                "amount": amount,
                "balance_after": after,
            },
        )
        return entry

    def _lock_balance(self, user_id: int) -> Balance | None:
        return (
            self.db.execute(
                select(Balance)
                .where(Balance.user_id == user_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )

    def _find_by_idempotency(self, key: str) -> LedgerTransaction | None:
        return (
            self.db.query(LedgerTransaction)
            .filter(LedgerTransaction.idempotency_key == key)
            .first()
        )

    def _replay(
        self,
        existing: LedgerTransaction,
        *,
        user_id: int,
        txn_type: TransactionType,
        amount: int,
    ) -> LedgerTransaction:
        if (
            existing.user_id != user_id
            or existing.type != txn_type.value
            or int(existing.amount_minor_units) != amount
        ):
            raise IdempotencyKeyConflictError(
                f"idempotency_key {existing.idempotency_key!r} already used for a different operation"
            )
        logger.info(
            "ledger.idempotent_replay",
            extra={"user_id": user_id, "transaction_id": existing.id, "idempotency_key": existing.idempotency_key},
        )
        return existing


def _normalize_type(value: TransactionType | str) -> TransactionType:
    if isinstance(value, TransactionType):
        return value
    try:
        return TransactionType((value or "").strip().lower())
    except ValueError:
        raise ValueError(f"Unknown transaction type: {value!r}") from None


def _validate_amount(txn_type: TransactionType, amount: int) -> None:
    if amount == 0:
        raise ValueError("amount_minor_units must be non-zero")
    if txn_type.is_credit and amount < 0:
        raise ValueError(f"{txn_type.value} amount must be positive")
    if not txn_type.is_credit and amount > 0:
        raise ValueError("usage amount must be negative")
