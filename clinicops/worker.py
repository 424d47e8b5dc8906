import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from clinicops.config import EngineSettings, get_engine_settings
from clinicops.due_processor import DueNotificationProcessor
from clinicops.scheduling import ReminderScheduler

logger = logging.getLogger(__name__)

# Track running background tasks so they can be cancelled on shutdown
_background_tasks: List[asyncio.Task] = []

# Components registered by the hosting process before the scheduler starts
_processor: Optional[DueNotificationProcessor] = None
_scheduler: Optional[ReminderScheduler] = None


def register_components(
    processor: DueNotificationProcessor, scheduler: ReminderScheduler
) -> None:
    """Register the sweep and reminder components used by the periodic jobs."""

    global _processor, _scheduler
    _processor = processor
    _scheduler = scheduler


async def sweep_due_notifications() -> None:
    """Move due reminders to sent."""

    if _processor is None:
        logger.debug("No due notification processor configured; skipping sweep")
        return
    report = await asyncio.to_thread(_processor.run_once)
    if report.claimed or report.failed:
        logger.info(
            "Due sweep claimed %s, skipped %s, failed %s",
            report.claimed,
            report.skipped,
            report.failed,
        )


async def generate_medication_reminders() -> None:
    """Write today's medication reminders for eligible routines."""

    if _scheduler is None:
        logger.debug("No reminder scheduler configured; skipping medication reminders")
        return
    report = await asyncio.to_thread(_scheduler.run_medication_reminders)
    if report.routines_failed:
        logger.warning("Medication reminders failed for routines %s", report.failed_ids)


async def purge_expired_notifications() -> None:
    """Delete notifications past the retention window."""

    if _processor is None:
        logger.debug("No due notification processor configured; skipping cleanup")
        return
    deleted = await asyncio.to_thread(_processor.purge_expired)
    logger.info("Purged %s expired notifications", deleted)


async def _run_periodic(interval: float, coro: Callable[[], Awaitable[None]]) -> None:
    """Run ``coro`` every ``interval`` seconds."""
    while True:
        try:
            await coro()
        except Exception:
            logger.exception("Scheduled task failed")
        await asyncio.sleep(interval)


def start_scheduler(settings: Optional[EngineSettings] = None) -> None:
    """Start the periodic background jobs; calling it again is a no-op."""
    if _background_tasks:
        logger.debug("Background scheduler already running")
        return
    settings = settings or get_engine_settings()
    _background_tasks.extend(
        [
            asyncio.create_task(
                _run_periodic(settings.due_sweep_interval, sweep_due_notifications)
            ),
            asyncio.create_task(
                _run_periodic(settings.medication_sweep_interval, generate_medication_reminders)
            ),
        ]
    )
    if settings.cleanup_enabled:
        _background_tasks.append(
            asyncio.create_task(
                _run_periodic(settings.cleanup_interval, purge_expired_notifications)
            )
        )


async def stop_scheduler() -> None:
    """Cancel all running background tasks."""
    for task in _background_tasks:
        task.cancel()
    await asyncio.gather(*_background_tasks, return_exceptions=True)
    _background_tasks.clear()
