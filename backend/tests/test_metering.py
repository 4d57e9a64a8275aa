from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from chat_ledger.core import config as app_config
from chat_ledger.models.ledger import ApiUsage, LedgerTransaction
from chat_ledger.services.balance import BalanceService
from chat_ledger.services.ledger import InsufficientBalanceError
from chat_ledger.services.metering import ChatMetering, ProviderUsage
from chat_ledger.services.pricing import ChatMode, PricingError


def test_quote_for_priced_mode(db_session, users):
    user, _ = users
    quote = ChatMetering(db_session).quote(user.id, "simple", "hello there")

    assert quote.mode is ChatMode.SIMPLE
    assert quote.required == 20
    assert quote.available == 100
    assert quote.ok


def test_quote_reports_shortfall_without_writing(db_session, users):
    user, _ = users
    metering = ChatMetering(db_session)
    message = " ".join(["word"] * 20)
    quote = metering.quote(user.id, "max", message)

    assert not quote.ok
    assert quote.required == 2_343
    with pytest.raises(InsufficientBalanceError) as excinfo:
        metering.require_affordable(user.id, "max", message)
    assert excinfo.value.required == 2_343
    assert excinfo.value.available == 100
    assert db_session.query(LedgerTransaction).filter(LedgerTransaction.type == "usage").count() == 0


def test_quote_free_and_legacy_modes(db_session, users):
    user, _ = users
    metering = ChatMetering(db_session)

    free = metering.quote(user.id, "default", "anything at all")
    assert free.required == 0 and free.ok

    legacy = metering.quote(user.id, "legacy", "anything at all")
    assert legacy.required == app_config.settings.LEGACY_MIN_BALANCE_UNITS
    assert legacy.ok

    app_config.settings.LEGACY_MIN_BALANCE_UNITS = 101
    assert not metering.quote(user.id, "legacy", "anything at all").ok

    with pytest.raises(PricingError):
        metering.quote(user.id, "turbo", "anything")


def test_settle_priced_mode_charges_quote_and_records_usage(db_session, users):
    user, _ = users
    metering = ChatMetering(db_session)
    message = "Summarize the attached quarterly numbers please"
    quote = metering.require_affordable(user.id, "code-simple", message)

    result = metering.settle(
        user.id,
        quote,
        message,
        ProviderUsage(input_tokens=120, output_tokens=80),
        idempotency_key="chat-msg-1",
        request_metadata={"conversation_id": "c-1"},
    )

    assert result.cost == 15
    assert result.balance_after == 85
    assert result.model == "x-ai/grok-code-fast-1"
    txn = result.transaction
    assert txn.amount_minor_units == -15
    assert txn.description == "Code - grok-code-fast"
    assert txn.details["mode"] == "code-simple"
    assert txn.details["total_tokens"] == 200
    assert txn.details["prompt_word_count"] == 6
    assert txn.details["prompt_preview"] == message

    usage = db_session.query(ApiUsage).one()
    assert usage.transaction_id == txn.id
    assert usage.tokens_used == 200
    assert usage.cost_minor_units == 15
    assert usage.request_metadata["conversation_id"] == "c-1"


def test_settle_is_idempotent_per_request_key(db_session, users):
    user, _ = users
    metering = ChatMetering(db_session)
    quote = metering.quote(user.id, "simple", "hi")

    first = metering.settle(user.id, quote, "hi", ProviderUsage(), idempotency_key="req-7")
    second = metering.settle(user.id, quote, "hi", ProviderUsage(), idempotency_key="req-7")

    assert first.transaction.id == second.transaction.id
    assert BalanceService(db_session).get_balance(user.id).balance == 80


def test_prompt_preview_is_truncated(db_session, users):
    user, _ = users
    BalanceService(db_session).deposit(user.id, 10_000)
    metering = ChatMetering(db_session)
    message = "x" * 250
    quote = metering.quote(user.id, "simple", message)

    result = metering.settle(user.id, quote, message, ProviderUsage())

    assert result.transaction.details["prompt_preview"] == "x" * 100


def test_settle_legacy_charges_from_tokens(db_session, users):
    user, _ = users
    metering = ChatMetering(db_session)
    quote = metering.require_affordable(user.id, "legacy", "hello")

    result = metering.settle(user.id, quote, "hello", ProviderUsage(input_tokens=1_000, output_tokens=1_000))

    assert result.cost == 18
    assert result.balance_after == 82
    assert result.model == "anthropic/claude-sonnet-4"


def test_settle_legacy_can_still_fail_after_the_call(db_session, users, caplog):
    user, _ = users
    metering = ChatMetering(db_session)
    quote = metering.require_affordable(user.id, "legacy", "hello")

    with caplog.at_level("WARNING"):
        with pytest.raises(InsufficientBalanceError):
            metering.settle(user.id, quote, "hello", ProviderUsage(input_tokens=0, output_tokens=100_000))

    assert any(record.getMessage() == "metering.legacy_charge_failed" for record in caplog.records)
    assert BalanceService(db_session).get_balance(user.id).balance == 100
    assert db_session.query(ApiUsage).count() == 0


def test_settle_free_mode_charges_nothing(db_session, users):
    user, _ = users
    metering = ChatMetering(db_session)
    quote = metering.quote(user.id, "default", "hello")

    result = metering.settle(user.id, quote, "hello", ProviderUsage(input_tokens=5, output_tokens=5))

    assert result.transaction is None
    assert result.cost == 0
    assert result.balance_after == 100
    assert result.model == "openrouter/free"
    assert db_session.query(LedgerTransaction).filter(LedgerTransaction.type == "usage").count() == 0


def test_audit_failure_does_not_undo_the_charge(db_session, users, monkeypatch):
    user, _ = users
    service = BalanceService(db_session)

    def _boom(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("audit store down"))

    monkeypatch.setattr(service, "record_api_usage", _boom)
    metering = ChatMetering(db_session, balance_service=service)
    quote = metering.quote(user.id, "simple", "hello")

    result = metering.settle(user.id, quote, "hello", ProviderUsage(input_tokens=1, output_tokens=1))

    assert result.balance_after == 80
    assert service.get_balance(user.id).balance == 80
    assert db_session.query(ApiUsage).count() == 0


def test_refund_settlement_applies_once(db_session, users):
    user, _ = users
    metering = ChatMetering(db_session)
    quote = metering.quote(user.id, "simple", "hello")
    charged = metering.settle(user.id, quote, "hello", ProviderUsage())

    refund = metering.refund_settlement(user.id, charged.transaction)
    again = metering.refund_settlement(user.id, charged.transaction, "Retried refund")

    assert refund.id == again.id
    assert refund.type == "refund"
    assert refund.amount_minor_units == 20
    assert refund.idempotency_key == f"refund:{charged.transaction.id}"
    assert refund.details == {"refunded_transaction_id": charged.transaction.id}
    assert BalanceService(db_session).get_balance(user.id).balance == 100
