"""Quota ledger: admission checks and the post-response debit.

Admission reads the account snapshot resolved for the request. The debit runs
later, once the response outcome is known, and goes straight to storage as a
single decrement-if-positive statement, so a burst of concurrent requests from
one account can never push ``requests_remaining`` below zero. Requests admitted
against the last unit of quota still complete; their debits are rejected and
logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import db

logger = logging.getLogger("newsdigest.ledger")

TIER_FREE = "FREE"
TIER_PREMIUM = "PREMIUM"
TIER_PRO = "PRO"
TIERS = (TIER_FREE, TIER_PREMIUM, TIER_PRO)

QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"

# Recorded for streams the client abandoned before the end marker.
CLIENT_CLOSED_REQUEST = 499


@dataclass(frozen=True)
class Admission:
    allowed: bool
    reason: str | None = None


ADMIT = Admission(allowed=True)


def normalize_tier(value: str | None) -> str:
    if not value:
        return TIER_FREE
    normalized = value.strip().upper()
    if normalized in TIERS:
        return normalized
    return TIER_FREE


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def check_admission(account: dict[str, Any], now: datetime | None = None) -> Admission:
    """Decide whether the account may consume one more metered request."""
    if int(account.get("requests_remaining") or 0) <= 0:
        return Admission(allowed=False, reason=QUOTA_EXCEEDED)

    expires_at = account.get("subscription_expires_at")
    if isinstance(expires_at, datetime):
        if now is None:
            now = _now_utc()
        if expires_at <= now:
            return Admission(allowed=False, reason=SUBSCRIPTION_EXPIRED)

    return ADMIT


def is_success(status_code: int | None) -> bool:
    return status_code is not None and 200 <= status_code < 300


def debit_on_success(account_id: str, status_code: int | None) -> int | None:
    """Debit one request iff the outcome succeeded.

    Returns the remaining count after the debit, or None when nothing was
    debited (non-success outcome, or the quota was already exhausted by a
    concurrent request).
    """
    if not is_success(status_code):
        return None
    remaining = db.decrement_requests_remaining(account_id)
    if remaining is None:
        logger.warning(
            "Debit rejected for account %s: quota already exhausted by concurrent requests.",
            account_id,
        )
    return remaining
