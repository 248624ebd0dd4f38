from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import db
from config import free_reset_interval_days, free_tier_requests, quota_reset_hour_utc

logger = logging.getLogger("newsdigest.scheduler")

_run_lock = threading.Lock()


@dataclass(frozen=True)
class ResetSummary:
    status: str
    candidates: int = 0
    reset: int = 0
    failed: int = 0


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def reset_free_quotas(now: datetime | None = None) -> ResetSummary:
    """Restore the free allowance for FREE accounts whose last reset is old enough."""
    if not _run_lock.acquire(blocking=False):
        logger.warning("Free tier quota reset already running; skipping this run.")
        return ResetSummary(status="skipped")
    try:
        if now is None:
            now = _now_utc()
        allowance = free_tier_requests()
        cutoff = now - timedelta(days=free_reset_interval_days())
        accounts = db.list_free_accounts_due_for_reset(cutoff)
        logger.info("Found %d free tier accounts eligible for quota reset", len(accounts))

        reset = 0
        failed = 0
        for account in accounts:
            try:
                db.reset_requests_remaining(account["id"], allowance, now)
            except Exception:
                failed += 1
                logger.exception("Failed to reset quota for account %s", account["id"])
                continue
            reset += 1
            logger.info("Reset quota for account %s to %d requests", account["id"], allowance)

        logger.info("Free tier quota reset finished: %d reset, %d failed", reset, failed)
        return ResetSummary(status="completed", candidates=len(accounts), reset=reset, failed=failed)
    finally:
        _run_lock.release()


def seconds_until_next_run(now: datetime, hour: int) -> float:
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def run_forever() -> None:
    """Run the reset once a day at the configured UTC hour until cancelled."""
    hour = quota_reset_hour_utc()
    logger.info("Free tier quota reset scheduled daily at %02d:00 UTC", hour)
    while True:
        await asyncio.sleep(seconds_until_next_run(_now_utc(), hour))
        try:
            await asyncio.to_thread(reset_free_quotas)
        except Exception:
            logger.exception("Free tier quota reset run failed.")
