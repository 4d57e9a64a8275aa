# chat_ledger/dependencies/auth.py
from __future__ import annotations

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from chat_ledger.core.database import get_db
from chat_ledger.core.security import verify_token_purpose
from chat_ledger.models.user import User

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """
    Validates:
      - Authorization: Bearer <token>
      - token signature + exp + purpose
      - user exists + is_active
    Returns:
      - User SQLAlchemy model
    """
    if not creds or creds.scheme.lower() != "bearer":
        raise _unauthorized("Missing Authorization header")

    try:
        payload = verify_token_purpose(creds.credentials, expected_purpose="access")
    except (ValueError, JWTError):
        raise _unauthorized("Invalid or expired token")

    try:
        user_id = int(payload.get("sub") or 0)
    except (TypeError, ValueError):
        raise _unauthorized("Invalid or expired token")
    if user_id <= 0:
        raise _unauthorized("Invalid or expired token")

    user = db.get(User, user_id)
    if not user:
        raise _unauthorized("User not found")
    if not getattr(user, "is_active", True):
        raise _unauthorized("User is inactive")

    return user
