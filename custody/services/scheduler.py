from __future__ import annotations

import asyncio
import logging

from aiojobs import create_scheduler

from custody.config import settings
from custody.services.notifications import notify_approvers
from custody.services.otp import expire_stale_otps
from custody.services.overrides import list_pending_overrides

logger = logging.getLogger(__name__)


async def job_expire_otps() -> None:
    count = await expire_stale_otps()
    if count:
        logger.info("job_expire_otps done", extra={"extra": {"expired": count}})


async def job_remind_pending_overrides() -> None:
    """Nudge approvers while override requests are waiting."""
    _, total = await list_pending_overrides(limit=1)
    if total > 0:
        await notify_approvers(f"⏳ {total} handover override request(s) awaiting approval. Use /overrides to review.")


async def run_scheduler() -> None:
    sched = await create_scheduler()

    async def periodic(coro, interval: float) -> None:
        while True:
            try:
                await coro()
            except Exception as e:
                logger.exception("periodic job error: %s", e)
            await asyncio.sleep(interval)

    await sched.spawn(periodic(job_expire_otps, settings.otp_sweep_interval_seconds))
    await sched.spawn(periodic(job_remind_pending_overrides, 60 * 60))  # every 1h

    logger.info("scheduler started")
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        await sched.close()
        raise
