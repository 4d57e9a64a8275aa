from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from chat_ledger.core.config import settings
from chat_ledger.core.database import get_db
from chat_ledger.dependencies.admin import require_admin_user
from chat_ledger.dependencies.auth import get_current_user
from chat_ledger.models.ledger import LedgerTransaction
from chat_ledger.models.user import User
from chat_ledger.schemas.balance import (
    BalanceOut,
    DepositIn,
    DepositOut,
    PaginationOut,
    TransactionOut,
    TransactionPageOut,
    UsageStatOut,
    UsageStatsOut,
)
from chat_ledger.services.balance import BalanceService
from chat_ledger.services.pricing import format_units_to_usd, usd_to_units

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/balance", tags=["balance"])


def _transaction_out(entry: LedgerTransaction) -> TransactionOut:
    return TransactionOut(
        id=entry.id,
        type=entry.type,
        amount_minor_units=entry.amount_minor_units,
        amount_usd=format_units_to_usd(entry.amount_minor_units),
        balance_before_minor_units=entry.balance_before_minor_units,
        balance_after_minor_units=entry.balance_after_minor_units,
        balance_after_usd=format_units_to_usd(entry.balance_after_minor_units),
        description=entry.description,
        metadata=entry.details,
        status=entry.status,
        created_at=entry.created_at,
    )


@router.get("", response_model=BalanceOut)
def get_balance(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> BalanceOut:
    snapshot = BalanceService(db).get_balance(user.id)
    return BalanceOut(
        currency=snapshot.currency,
        balance_minor_units=snapshot.balance,
        balance_usd=format_units_to_usd(snapshot.balance),
        locked_minor_units=snapshot.locked,
        available_minor_units=snapshot.available,
        available_usd=format_units_to_usd(snapshot.available),
    )


@router.get("/transactions", response_model=TransactionPageOut)
def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> TransactionPageOut:
    entries = BalanceService(db).get_transaction_history(user.id, limit=limit, offset=offset)
    return TransactionPageOut(
        transactions=[_transaction_out(entry) for entry in entries],
        pagination=PaginationOut(limit=limit, offset=offset, has_more=len(entries) == limit),
    )


@router.get("/usage-stats", response_model=UsageStatsOut)
def get_usage_stats(
    days: int = Query(30, ge=1),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> UsageStatsOut:
    window = min(days, settings.USAGE_STATS_MAX_DAYS)
    stats = BalanceService(db).get_usage_stats(user.id, days=window)
    return UsageStatsOut(
        days=window,
        stats=[
            UsageStatOut(
                date=item.date,
                request_count=item.request_count,
                total_tokens=item.total_tokens,
                total_cost_minor_units=item.total_cost_minor_units,
                total_cost_usd=format_units_to_usd(item.total_cost_minor_units),
                models_used=item.models_used,
            )
            for item in stats
        ],
    )


@router.post("/deposit", response_model=DepositOut)
def admin_deposit(
    payload: DepositIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin_user),
) -> DepositOut:
    amount = usd_to_units(payload.amount_usd)
    if amount <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid deposit data")

    transaction = BalanceService(db).deposit(
        payload.user_id,
        amount,
        (payload.description or "").strip() or "Manual deposit by admin",
        {"source": "admin", "admin_user_id": admin.id},
        idempotency_key=payload.idempotency_key,
    )
    logger.info("Admin %s deposited %s units for user %s", admin.id, amount, payload.user_id)
    return DepositOut(message="Deposit successful", transaction=_transaction_out(transaction))
