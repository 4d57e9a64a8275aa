from __future__ import annotations

from datetime import date as date_type, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, field_validator


class BalanceOut(BaseModel):
    currency: str = "usd"
    balance_minor_units: int
    balance_usd: str
    locked_minor_units: int
    available_minor_units: int
    available_usd: str


class TransactionOut(BaseModel):
    id: str
    type: str
    amount_minor_units: int
    amount_usd: str
    balance_before_minor_units: int
    balance_after_minor_units: int
    balance_after_usd: str
    description: str | None = None
    metadata: dict[str, Any] | None = None
    status: str
    created_at: datetime


class PaginationOut(BaseModel):
    limit: int
    offset: int
    has_more: bool


class TransactionPageOut(BaseModel):
    transactions: list[TransactionOut]
    pagination: PaginationOut


class UsageStatOut(BaseModel):
    date: date_type
    request_count: int
    total_tokens: int
    total_cost_minor_units: int
    total_cost_usd: str
    models_used: dict[str, int]


class UsageStatsOut(BaseModel):
    days: int
    stats: list[UsageStatOut]


class DepositIn(BaseModel):
    user_id: int
    amount_usd: Decimal
    description: str | None = None
    idempotency_key: str | None = None

    @field_validator("amount_usd")
    @classmethod
    def _validate_amount(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("amount_usd must be positive")
        return value


class DepositOut(BaseModel):
    message: str
    transaction: TransactionOut
