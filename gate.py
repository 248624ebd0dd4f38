from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import db
import ledger
from auth import ExpiredToken, InvalidToken, verify_token
from config import auth_secret

logger = logging.getLogger("newsdigest.gate")

NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
INVALID_TOKEN = "INVALID_TOKEN"
EXPIRED_TOKEN = "EXPIRED_TOKEN"
INVALID_KEY = "INVALID_KEY"

REJECTION_MESSAGES = {
    NOT_AUTHENTICATED: "You are not logged in. Please log in to get access.",
    INVALID_TOKEN: "Invalid auth token.",
    EXPIRED_TOKEN: "Auth token expired. Please log in again.",
    INVALID_KEY: "Invalid API key.",
    ledger.QUOTA_EXCEEDED: "You have reached your request limit. Please upgrade your subscription.",
    ledger.SUBSCRIPTION_EXPIRED: "Your subscription has expired. Please renew your subscription.",
}


class AccessRejected(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(REJECTION_MESSAGES.get(reason, reason))
        self.reason = reason

    @property
    def message(self) -> str:
        return str(self)


@dataclass(frozen=True)
class ClientInfo:
    user_agent: str = "Unknown"
    ip_address: str = "Unknown"


@dataclass
class AdmittedRequest:
    """A metered request in flight. ``complete`` must be called once it finishes."""

    account: dict[str, Any]
    endpoint: str
    client: ClientInfo = field(default_factory=ClientInfo)
    started_at: float = field(default_factory=time.monotonic)
    _done: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def account_id(self) -> str:
        return self.account["id"]

    def complete(self, status_code: int) -> bool:
        """Debit on success and append the usage record. Runs at most once."""
        with self._lock:
            if self._done:
                return False
            self._done = True

        latency_ms = int((time.monotonic() - self.started_at) * 1000)
        try:
            ledger.debit_on_success(self.account_id, status_code)
        except Exception:
            logger.exception("Error updating request count for account %s", self.account_id)
        try:
            db.insert_usage_record(
                record_id=str(uuid.uuid4()),
                account_id=self.account_id,
                endpoint=self.endpoint,
                status=status_code,
                latency_ms=latency_ms,
                user_agent=self.client.user_agent,
                ip_address=self.client.ip_address,
            )
        except Exception:
            logger.exception("Error logging usage record for account %s", self.account_id)
        return True


def _bearer_token(authorization: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        return token or None
    return None


def resolve_account(authorization: str | None, api_key: str | None) -> dict[str, Any]:
    """Resolve the caller. A bearer credential wins over the API key header."""
    token = _bearer_token(authorization)
    if token:
        try:
            payload = verify_token(token, auth_secret())
        except ExpiredToken as exc:
            raise AccessRejected(EXPIRED_TOKEN) from exc
        except InvalidToken as exc:
            raise AccessRejected(INVALID_TOKEN) from exc
        account_id = payload.get("sub")
        account = db.get_account_by_id(account_id) if account_id else None
        if not account:
            raise AccessRejected(NOT_AUTHENTICATED)
        return account

    key = (api_key or "").strip()
    if key:
        account = db.get_account_by_api_key(key)
        if not account:
            raise AccessRejected(INVALID_KEY)
        return account

    raise AccessRejected(NOT_AUTHENTICATED)


def admit(
    authorization: str | None,
    api_key: str | None,
    *,
    endpoint: str,
    client: ClientInfo | None = None,
) -> AdmittedRequest:
    account = resolve_account(authorization, api_key)
    admission = ledger.check_admission(account)
    if not admission.allowed:
        raise AccessRejected(admission.reason or ledger.QUOTA_EXCEEDED)
    return AdmittedRequest(account=account, endpoint=endpoint, client=client or ClientInfo())
