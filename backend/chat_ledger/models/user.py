# chat_ledger/models/user.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, func
from sqlalchemy.orm import relationship

from chat_ledger.core.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=True)

    is_active = Column(Boolean, nullable=False, server_default="true", default=True)
    is_admin = Column(Boolean, nullable=False, server_default="false", default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # user → balance (1:1, created together)
    balance = relationship(
        "Balance",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )
