"""Celery configuration for the recurring audit."""

from __future__ import annotations

import asyncio
import logging
import os

from celery import Celery
from celery.schedules import crontab

from restock.config import DEFAULT_REDIS_URL
from restock.errors import LockContentionError, NotConfiguredError
from restock.jobs.coordinator import run_audit

logger = logging.getLogger(__name__)

broker_url = os.environ.get("REDIS_URL", DEFAULT_REDIS_URL)
backend_url = os.environ.get("REDIS_URL", DEFAULT_REDIS_URL)
audit_every_min = int(os.environ.get("AUDIT_EVERY_MIN", "10"))

celery_app = Celery("restock", broker=broker_url, backend=backend_url)
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "inventory-audit": {
        "task": "restock.jobs.audit.run_audit",
        "schedule": crontab(minute=f"*/{audit_every_min}"),
    },
}


@celery_app.task(name="restock.jobs.audit.run_audit")
def run_audit_task(reset: bool = False, limit: int | None = None) -> dict[str, object] | None:
    try:
        report = asyncio.run(run_audit(reset=reset, limit=limit))
    except LockContentionError as exc:
        logger.info("Skipping scheduled audit: %s", exc)
        return None
    except NotConfiguredError as exc:
        logger.error("Audit not configured: %s", exc)
        return None
    return report.as_dict()
