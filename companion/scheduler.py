import asyncio
import logging
from datetime import datetime, timezone

from companion.core.config import settings
from companion.db.session import SessionLocal
from companion.matching.lifecycle import notify_overdue_pre_matches
from companion.realtime.notifier import get_notifier
from companion.stages.cooling import resolve_elapsed_cooling_periods

log = logging.getLogger("scheduler")

_scheduler_task: asyncio.Task | None = None


async def _run_overdue_pre_matches_once(now: datetime | None = None) -> int | None:
    async with SessionLocal() as db:
        try:
            count = await notify_overdue_pre_matches(db, now, notifier=get_notifier())
            log.info(f"[SCHEDULER] Overdue pre-match job complete: notified={count}")
            return count
        except Exception as e:
            log.exception(f"[SCHEDULER] Overdue pre-match job failed: {e}")
            return None


async def _run_cooling_once(now: datetime | None = None) -> int | None:
    async with SessionLocal() as db:
        try:
            count = await resolve_elapsed_cooling_periods(db, now, notifier=get_notifier())
            log.info(f"[SCHEDULER] Cooling-off job complete: moved_to_review={count}")
            return count
        except Exception as e:
            log.exception(f"[SCHEDULER] Cooling-off job failed: {e}")
            return None


async def run_jobs_once(now: datetime | None = None) -> dict:
    return {
        "overdue_pre_matches": await _run_overdue_pre_matches_once(now),
        "cooling_periods": await _run_cooling_once(now),
    }


async def _scheduler_loop():
    interval_seconds = settings.SCHEDULER_INTERVAL_MINUTES * 60

    log.info(f"[SCHEDULER] Starting scheduler: interval={settings.SCHEDULER_INTERVAL_MINUTES}m")

    await asyncio.sleep(60)

    while True:
        try:
            log.info(f"[SCHEDULER] Running jobs at {datetime.now(timezone.utc).isoformat()}")
            await run_jobs_once()
        except asyncio.CancelledError:
            log.info("[SCHEDULER] Scheduler cancelled, shutting down")
            break
        except Exception as e:
            log.exception(f"[SCHEDULER] Unexpected error: {e}")

        log.info(f"[SCHEDULER] Next run in {settings.SCHEDULER_INTERVAL_MINUTES} minutes")
        await asyncio.sleep(interval_seconds)


def start_scheduler():
    global _scheduler_task

    if not settings.SCHEDULER_ENABLED:
        log.info("[SCHEDULER] Scheduler is disabled (SCHEDULER_ENABLED=false)")
        return

    if _scheduler_task is not None:
        log.warning("[SCHEDULER] Scheduler already running")
        return

    _scheduler_task = asyncio.create_task(_scheduler_loop())
    log.info("[SCHEDULER] Scheduler started")


def stop_scheduler():
    global _scheduler_task

    if _scheduler_task is not None:
        _scheduler_task.cancel()
        _scheduler_task = None
        log.info("[SCHEDULER] Scheduler stopped")
