from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chat_ledger.models.ledger import LedgerTransaction
from chat_ledger.models.payment_event import PaymentEvent, PaymentEventStatus
from chat_ledger.services.balance import BalanceService
from chat_ledger.services.pricing import usd_to_units

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500


class PaymentServiceError(Exception):
    """Base error for payment crediting."""


class PaymentMismatchError(PaymentServiceError):
    """The payment reference was already recorded for another user or amount."""


@dataclass
class PaymentCreditResult:
    transaction: LedgerTransaction
    already_processed: bool


def usdc_to_units(amount: Decimal | float | str) -> int:
    """Stablecoin amounts are 1:1 with USD; never credit less than one unit."""
    return max(1, usd_to_units(amount))


class PaymentService:
    """
    Turns externally verified payments into deposits exactly once.

    The verifier (on-chain lookup, card processor webhook) is out of scope;
    callers hand over a payment reference they already confirmed. The
    payment_events row dedupes by reference and the deposit's idempotency key
    is derived from the same reference, so a crash between the two steps is
    safe to replay.
    """

    def __init__(self, db: Session, *, balance_service: BalanceService | None = None) -> None:
        self.db = db
        self.balance = balance_service or BalanceService(db)

    def credit_verified_payment(
        self,
        *,
        user_id: int,
        payment_ref: str,
        amount_minor_units: int,
        network: str = "solana",
        metadata: dict[str, Any] | None = None,
    ) -> PaymentCreditResult:
        ref = (payment_ref or "").strip()
        if not ref:
            raise ValueError("payment_ref is required")
        amount = int(amount_minor_units)
        if amount <= 0:
            raise ValueError("amount_minor_units must be positive")
        normalized_network = (network or "").strip().lower() or "unknown"

        event = self._get_or_create_event(ref, normalized_network, user_id, amount)
        if event.user_id != user_id:
            raise PaymentMismatchError(f"Payment {ref} is already recorded for another user")
        if int(event.amount_minor_units) != amount:
            raise PaymentMismatchError(f"Payment {ref} was recorded with a different amount")

        if event.status == PaymentEventStatus.CREDITED.value and event.transaction_id:
            existing = self.balance.get_transaction(event.transaction_id)
            if existing is not None:
                logger.info(
                    "payments.already_processed",
                    extra={"user_id": user_id, "payment_ref": ref, "transaction_id": existing.id},
                )
                return PaymentCreditResult(transaction=existing, already_processed=True)

        deposit_metadata = {"payment_ref": ref, "network": normalized_network}
        if metadata:
            deposit_metadata.update(metadata)
        try:
            transaction = self.balance.deposit(
                user_id,
                amount,
                f"{normalized_network} payment {ref[:8]}...",
                deposit_metadata,
                idempotency_key=f"payment:{normalized_network}:{ref}",
            )
        except Exception as exc:
            logger.exception("Crediting payment %s failed", ref)
            self._mark_event(ref, PaymentEventStatus.FAILED, error=str(exc))
            raise

        self._mark_event(ref, PaymentEventStatus.CREDITED, transaction_id=transaction.id)
        return PaymentCreditResult(transaction=transaction, already_processed=False)

    def _get_or_create_event(self, ref: str, network: str, user_id: int, amount: int) -> PaymentEvent:
        existing = self._find_event(ref)
        if existing is not None:
            return existing

        record = PaymentEvent(
            payment_ref=ref,
            network=network,
            user_id=user_id,
            amount_minor_units=amount,
            status=PaymentEventStatus.PENDING.value,
        )
        try:
            self.db.add(record)
            self.db.commit()
            self.db.refresh(record)
            return record
        except IntegrityError:
            # Lost the race to a concurrent verification of the same payment.
            self.db.rollback()
            existing = self._find_event(ref)
            if existing is None:
                raise
            return existing

    def _find_event(self, ref: str) -> PaymentEvent | None:
        return self.db.query(PaymentEvent).filter(PaymentEvent.payment_ref == ref).first()

    def _mark_event(
        self,
        ref: str,
        status: PaymentEventStatus,
        *,
        transaction_id: str | None = None,
        error: str | None = None,
    ) -> None:
        record = self._find_event(ref)
        if record is None:
            return
        record.status = status.value
        if transaction_id:
            record.transaction_id = transaction_id
        record.error_message = error[:MAX_ERROR_MESSAGE_LENGTH] if error else None
        record.processed_at = datetime.now(timezone.utc)
        self.db.commit()
