"""Expiry sweeper: physical removal of lapsed suppression entries.

Lookups already ignore expired rows, so the sweep cadence only affects table
size. Permanent opt-outs are never touched. Only one sweep runs at a time
per process; a trigger that arrives while a sweep is running is dropped.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.services import registry_store

logger = logging.getLogger(__name__)

_sweep_lock = asyncio.Lock()
_scheduler: AsyncIOScheduler | None = None

SWEEP_JOB_ID = "dnc_expiry_sweep"


@dataclass
class SweepResult:
    """Outcome of one sweep run."""

    deleted: int = 0
    stale_batches_failed: int = 0
    skipped: bool = False


async def sweep(
    db: AsyncSession,
    now: datetime | None = None,
    config: Settings | None = None,
) -> SweepResult:
    """
    Delete every suppression entry that expired before `now`.

    Also finalizes upload batches stuck in PROCESSING longer than
    DNC_STALE_BATCH_MINUTES as FAILED.

    Args:
        db: Database session
        now: Reference time, defaults to the current UTC time
        config: Settings override

    Returns:
        SweepResult; skipped is True when another sweep was already running
    """
    config = config or settings

    if _sweep_lock.locked():
        logger.info("Sweep already in progress; trigger ignored", extra={"event": "sweep_skipped"})
        return SweepResult(skipped=True)

    async with _sweep_lock:
        now = now or registry_store.utcnow()
        deleted = await registry_store.delete_expired(db, now)
        stale = await registry_store.fail_stale_batches(
            db, timedelta(minutes=config.DNC_STALE_BATCH_MINUTES),
        )
        async with registry_store.store_errors("sweep commit"):
            await db.commit()

    logger.info(
        f"Expiry sweep removed {deleted} entries, failed {stale} stale batches",
        extra={"event": "sweep_completed", "deleted": deleted, "count": stale},
    )
    return SweepResult(deleted=deleted, stale_batches_failed=stale)


async def run_scheduled_sweep() -> None:
    """Scheduler job: sweep on a fresh session and log rather than raise."""
    from app.database import async_session_factory

    async with async_session_factory() as session:
        try:
            await sweep(session)
        except Exception as e:
            await session.rollback()
            logger.error(f"Scheduled sweep failed: {e}", extra={"event": "sweep_failed"})


def get_scheduler() -> AsyncIOScheduler | None:
    return _scheduler


def start_scheduler(config: Settings | None = None) -> AsyncIOScheduler:
    """Start the periodic sweep on the running event loop."""
    global _scheduler
    config = config or settings

    if _scheduler is not None:
        return _scheduler

    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        run_scheduled_sweep,
        IntervalTrigger(minutes=config.DNC_SWEEP_INTERVAL_MINUTES),
        id=SWEEP_JOB_ID,
        name="DNC Expiry Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info(
        f"Expiry sweeper scheduled every {config.DNC_SWEEP_INTERVAL_MINUTES} minutes",
        extra={"event": "sweeper_started"},
    )
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        logger.info("Expiry sweeper stopped", extra={"event": "sweeper_stopped"})
        _scheduler = None
