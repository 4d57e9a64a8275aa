# chat_ledger/services/users.py
"""
User management helpers.

Responsibilities:
- Create users together with their balance row
- Grant the one-time welcome bonus (best-effort)
- User lookup by id or email
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from chat_ledger.core.config import settings
from chat_ledger.models.ledger import Balance
from chat_ledger.models.user import User
from chat_ledger.services.balance import BalanceService
from chat_ledger.services.ledger import LedgerError

logger = logging.getLogger(__name__)


def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
    return db.get(User, user_id)


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    """Look up a user by email address."""
    return db.query(User).filter(User.email == email.strip().lower()).first()


def create_user(
    db: Session,
    email: str,
    *,
    name: str | None = None,
    is_admin: bool = False,
    currency: str = "usd",
) -> User:
    """
    Create a user and its zero balance in one commit, then grant the welcome
    bonus. A failed bonus never fails the signup.
    """
    normalized_email = (email or "").strip().lower()
    if not normalized_email:
        raise ValueError("email is required")

    user = User(email=normalized_email, name=name, is_admin=is_admin, is_active=True)
    user.balance = Balance(balance_minor_units=0, locked_minor_units=0, currency=currency)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Created user %s with empty balance", user.id)

    grant_welcome_bonus(db, user.id)
    return user


def grant_welcome_bonus(db: Session, user_id: int, *, source: str = "registration") -> bool:
    amount = settings.WELCOME_BONUS_UNITS
    if amount <= 0:
        return False
    try:
        BalanceService(db).bonus(
            user_id,
            amount,
            "Welcome bonus",
            {"source": source},
            idempotency_key=f"welcome:{user_id}",
        )
    except (LedgerError, ValueError):
        logger.warning(
            "users.welcome_bonus_failed",
            extra={"user_id": user_id, "amount": amount},
            exc_info=True,
        )
        return False
    return True
