"""Periodic housekeeping: record retention, old jobs, chat sessions, key rotation."""

import asyncio
import logging

from voicelink.core.config import settings
from voicelink.core.database import SessionLocal
from voicelink.providers.context import ProviderContext
from voicelink.services.jobs import cleanup_old_jobs
from voicelink.services.provider_settings import rotate_provider_credentials
from voicelink.services.webhooks import purge_webhook_records

logger = logging.getLogger(__name__)


def run_maintenance(db, context: ProviderContext) -> dict:
    purged = purge_webhook_records(db)
    cleaned = cleanup_old_jobs(db)
    expired = context.chat_sessions.purge_expired()
    rotated = rotate_provider_credentials(db, context)
    return {
        "webhook_records": purged,
        "jobs": cleaned,
        "chat_sessions": expired,
        "rotated_credentials": rotated,
    }


async def maintenance_loop(context: ProviderContext) -> None:
    interval = settings.MAINTENANCE_INTERVAL_SECONDS
    logger.info("Maintenance loop started (interval: %ds)", interval)

    while True:
        try:
            db = SessionLocal()
            try:
                counts = run_maintenance(db, context)
                if any(counts.values()):
                    logger.info("Maintenance removed %s", counts)
            finally:
                db.close()
        except Exception:
            logger.exception("Error in maintenance loop")

        await asyncio.sleep(interval)
