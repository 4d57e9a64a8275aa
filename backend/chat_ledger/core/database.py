from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from chat_ledger.core.config import settings

_engine: Engine | None = None

SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def init_engine(url: str | None = None) -> Engine:
    """
    Create the pooled engine once per process and bind SessionLocal to it.
    Called from the application lifespan; get_db falls back to it lazily.
    """
    global _engine
    if _engine is None:
        _engine = create_engine(
            url or settings.database_url,
            pool_pre_ping=True,  # checks stale connections
            pool_size=settings.DB_POOL_SIZE,
        )
        SessionLocal.configure(bind=_engine)
    return _engine


def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


def get_db() -> Generator[Session, None, None]:
    init_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
