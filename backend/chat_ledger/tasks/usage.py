from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chat_ledger.celery_app import BROKER_CONFIGURED, celery_app
from chat_ledger.core.config import settings
from chat_ledger.core.database import SessionLocal, init_engine
from chat_ledger.services.balance import BalanceService


logger = logging.getLogger(__name__)


def _with_db_session() -> Session:
    init_engine()
    return SessionLocal()


@celery_app.task(
    name="usage.record_api_usage",
    autoretry_for=(SQLAlchemyError,),
    retry_backoff=True,
    retry_backoff_max=60,
    retry_jitter=True,
    max_retries=settings.USAGE_AUDIT_MAX_RETRIES,
)
def record_api_usage(
    user_id: int,
    transaction_id: str | None,
    model: str,
    tokens_used: int,
    cost: int,
    metadata: dict[str, Any] | None = None,
) -> int:
    db = _with_db_session()
    try:
        record = BalanceService(db).record_api_usage(
            user_id, transaction_id, model, tokens_used, cost, metadata
        )
        return record.id
    except SQLAlchemyError:
        db.rollback()
        logger.warning("Usage audit write failed for transaction %s; will retry", transaction_id)
        raise
    finally:
        db.close()


def submit_api_usage(
    balance_service: BalanceService,
    *,
    user_id: int,
    transaction_id: str | None,
    model: str,
    tokens_used: int,
    cost: int,
    metadata: dict[str, Any] | None = None,
) -> None:
    """
    Fire-and-forget usage audit. With a broker the write goes through the
    retrying task; without one it runs inline on the caller's session. Neither
    path raises into the caller.
    """
    if BROKER_CONFIGURED:
        try:
            record_api_usage.delay(user_id, transaction_id, model, tokens_used, cost, metadata)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Could not enqueue usage audit for transaction %s", transaction_id)
        return
    balance_service.log_api_usage(user_id, transaction_id, model, tokens_used, cost, metadata)
