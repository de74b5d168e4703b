"""Background loop that runs an incremental Freshservice sync on a fixed interval."""

from __future__ import annotations

import asyncio
import logging

from helpdesk_sync.core.config import settings
from helpdesk_sync.core.exceptions import SyncCancelled
from helpdesk_sync.integrations.freshservice.service import SyncOrchestrator
from helpdesk_sync.models.enums import SyncKind

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None


async def _run_once(orchestrator: SyncOrchestrator) -> None:
    if not settings.freshservice_ready:
        logger.debug("Skipping scheduled sync: Freshservice credentials are not configured")
        return

    try:
        summary = await orchestrator.trigger_sync(SyncKind.incremental)
    except SyncCancelled:
        logger.info("Scheduled sync was force-stopped")
        return
    except Exception as exc:  # noqa: BLE001
        logger.warning("Scheduled sync failed: %s", exc)
        return

    if summary.status == "skipped":
        logger.info("Scheduled sync skipped: another sync is already running")
        return
    logger.info(
        "Scheduled sync completed: tickets=%s technicians=%s requesters=%s failures=%s",
        summary.tickets_synced,
        summary.technicians_synced,
        summary.requesters_synced,
        summary.failure_count,
    )


async def _loop(orchestrator: SyncOrchestrator) -> None:
    startup_delay = max(0, settings.SYNC_AUTO_STARTUP_DELAY_SECONDS)
    interval = settings.auto_sync_interval_minutes * 60
    if startup_delay:
        await asyncio.sleep(startup_delay)
    while True:
        await _run_once(orchestrator)
        await asyncio.sleep(interval)


async def start_auto_sync(orchestrator: SyncOrchestrator) -> None:
    global _task
    if _task is not None:
        return
    if not settings.SYNC_AUTO_ENABLED:
        return
    _task = asyncio.create_task(_loop(orchestrator), name="freshservice-auto-sync")
    logger.info("Scheduled sync loop started (every %s minutes)", settings.auto_sync_interval_minutes)


async def stop_auto_sync() -> None:
    global _task
    task = _task
    _task = None
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
