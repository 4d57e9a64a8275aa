from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from chat_ledger.core.database import get_db
from chat_ledger.dependencies.auth import get_current_user
from chat_ledger.models.user import User
from chat_ledger.schemas.chat import ChatQuoteIn, ChatQuoteOut
from chat_ledger.services.metering import ChatMetering
from chat_ledger.services.pricing import PricingError, format_units_to_usd, model_for_mode

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/quote", response_model=ChatQuoteOut)
def quote_chat(
    payload: ChatQuoteIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ChatQuoteOut:
    """Price a prompt and check it against the balance before any provider call."""
    try:
        quote = ChatMetering(db).quote(user.id, payload.mode, payload.message)
    except PricingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if not quote.ok:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "Insufficient balance",
                "details": {
                    "required_usd": format_units_to_usd(quote.required),
                    "current_balance_usd": format_units_to_usd(quote.available),
                },
            },
        )

    return ChatQuoteOut(
        mode=quote.mode.value,
        model=model_for_mode(quote.mode),
        ok=quote.ok,
        required_minor_units=quote.required,
        required_usd=format_units_to_usd(quote.required),
        available_minor_units=quote.available,
        current_balance_usd=format_units_to_usd(quote.available),
    )
