from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class ChatQuoteIn(BaseModel):
    mode: str = "default"
    message: str = Field(..., min_length=1)

    @field_validator("mode")
    @classmethod
    def _normalize_mode(cls, value: str) -> str:
        return (value or "default").strip().lower()


class ChatQuoteOut(BaseModel):
    mode: str
    model: str
    ok: bool
    required_minor_units: int
    required_usd: str
    available_minor_units: int
    current_balance_usd: str
