from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.orm import Session

from chat_ledger.core.config import settings
from chat_ledger.models.ledger import LedgerTransaction
from chat_ledger.services.balance import BalanceService
from chat_ledger.services.ledger import InsufficientBalanceError
from chat_ledger.services.pricing import (
    ChatMode,
    calculate_charge_units,
    cost_from_tokens,
    description_for_mode,
    model_for_mode,
    word_count,
)
from chat_ledger.tasks.usage import submit_api_usage

logger = logging.getLogger(__name__)

PROMPT_PREVIEW_CHARS = 100


@dataclass(frozen=True)
class ChargeQuote:
    mode: ChatMode
    required: int
    available: int

    @property
    def ok(self) -> bool:
        return self.available >= self.required


@dataclass(frozen=True)
class ProviderUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return int(self.input_tokens) + int(self.output_tokens)


@dataclass(frozen=True)
class SettlementResult:
    transaction: LedgerTransaction | None
    cost: int
    balance_after: int
    model: str


class ChatMetering:
    """
    Gate and bill chat requests against the prepaid balance.

    Pre-priced modes are quoted before the provider call and charged the same
    amount after a successful response. The legacy mode can only check a
    minimum balance up front; its real cost comes from provider token counts
    after the call, so its charge can still fail once the response exists.
    """

    def __init__(self, db: Session, *, balance_service: BalanceService | None = None) -> None:
        self.db = db
        self.balance = balance_service or BalanceService(db)

    def quote(self, user_id: int, mode: ChatMode | str, message: str) -> ChargeQuote:
        chat_mode = ChatMode.parse(mode)
        if chat_mode.is_free:
            required = 0
        elif chat_mode is ChatMode.LEGACY:
            required = settings.LEGACY_MIN_BALANCE_UNITS
        else:
            required = calculate_charge_units(chat_mode, message)

        snapshot = self.balance.get_balance(user_id)
        return ChargeQuote(mode=chat_mode, required=required, available=snapshot.balance)

    def require_affordable(self, user_id: int, mode: ChatMode | str, message: str) -> ChargeQuote:
        quote = self.quote(user_id, mode, message)
        if not quote.ok:
            raise InsufficientBalanceError(required=quote.required, available=quote.available)
        return quote

    def settle(
        self,
        user_id: int,
        quote: ChargeQuote,
        message: str,
        usage: ProviderUsage,
        *,
        idempotency_key: str | None = None,
        request_metadata: dict | None = None,
    ) -> SettlementResult:
        """Charge for a completed provider response and queue the usage audit row."""
        model = model_for_mode(quote.mode)
        if quote.mode.is_free:
            snapshot = self.balance.get_balance(user_id)
            return SettlementResult(transaction=None, cost=0, balance_after=snapshot.balance, model=model)

        if quote.mode is ChatMode.LEGACY:
            cost = cost_from_tokens(input_tokens=usage.input_tokens, output_tokens=usage.output_tokens)
        else:
            cost = quote.required

        words = word_count(message)
        charge_metadata = {
            "model": model,
            "mode": quote.mode.value,
            "input_tokens": usage.input_tokens,
            "output_tokens": usage.output_tokens,
            "total_tokens": usage.total_tokens,
            "prompt_preview": (message or "")[:PROMPT_PREVIEW_CHARS],
            "prompt_word_count": words,
        }
        try:
            transaction = self.balance.charge(
                user_id,
                cost,
                description_for_mode(quote.mode),
                charge_metadata,
                idempotency_key or str(uuid.uuid4()),
            )
        except InsufficientBalanceError:
            if quote.mode is ChatMode.LEGACY:
                # Known gap: the response was already produced but cannot be billed.
                logger.warning(
                    "metering.legacy_charge_failed",
                    extra={"user_id": user_id, "cost": cost, "model": model},
                )
            raise

        audit_metadata = {"mode": quote.mode.value, "prompt_word_count": words}
        if request_metadata:
            audit_metadata.update(request_metadata)
        submit_api_usage(
            self.balance,
            user_id=user_id,
            transaction_id=transaction.id,
            model=model,
            tokens_used=usage.total_tokens,
            cost=cost,
            metadata=audit_metadata,
        )

        return SettlementResult(
            transaction=transaction,
            cost=cost,
            balance_after=int(transaction.balance_after_minor_units),
            model=model,
        )

    def refund_settlement(
        self,
        user_id: int,
        transaction: LedgerTransaction,
        reason: str = "Refund: response not delivered",
    ) -> LedgerTransaction:
        """Credit back a charge whose response failed to reach the user. One refund per charge."""
        return self.balance.refund(
            user_id,
            abs(int(transaction.amount_minor_units)),
            reason,
            {"refunded_transaction_id": transaction.id},
            idempotency_key=f"refund:{transaction.id}",
        )
