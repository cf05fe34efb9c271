"""
APScheduler jobs:

  - every CONTRACT_SYNC_INTERVAL_MINUTES: refresh the local contract cache
    from the AMG Contract resources (only when CONTRACT_SYNC_ENABLED)
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from amg_portal.amg_client import AmgClient
from amg_portal.config import settings
from amg_portal.contract_store import contract_store
from amg_portal.contract_sync import sync_contracts

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def _sync_contracts() -> None:
    async with AmgClient.from_settings(settings) as client:
        try:
            status = await sync_contracts(
                client,
                contract_store,
                max_pages=settings.contract_sync_max_pages,
                page_size=settings.contract_sync_page_size,
            )
        except Exception as exc:
            logger.error("Contract sync job failed: %s", exc)
            return
    logger.info("Contract sync job finished: %s", status["status"])


def get_scheduler() -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler()

        if settings.contract_sync_enabled:
            _scheduler.add_job(
                _sync_contracts,
                IntervalTrigger(minutes=settings.contract_sync_interval_minutes),
                id="contract_sync",
                replace_existing=True,
            )

    return _scheduler
