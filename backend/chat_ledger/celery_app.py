from __future__ import annotations

import logging

from celery import Celery

from chat_ledger.core.config import settings


logger = logging.getLogger(__name__)

BROKER_CONFIGURED = bool(settings.USAGE_AUDIT_QUEUE_URL)

celery_app = Celery("chat-ledger-audit")

if BROKER_CONFIGURED:
    broker_url = settings.USAGE_AUDIT_QUEUE_URL
else:
    broker_url = "memory://"
    logger.info("USAGE_AUDIT_QUEUE_URL is not configured; usage audit writes run inline.")

celery_app.conf.update(
    broker_url=broker_url,
    result_backend=None,
    task_default_queue="usage-audit",
    task_serializer="json",
    accept_content=["json"],
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_connection_retry_on_startup=True,
    timezone="UTC",
    enable_utc=True,
)
