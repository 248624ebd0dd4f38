from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any
from urllib.parse import urlencode

import requests

from config import env

logger = logging.getLogger("newsdigest.notifications")

SUBSCRIPTION_CHANNEL = "user-subscription-channel"
SUBSCRIPTION_EVENT = "new-subscription"

_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")


def _pusher_settings() -> dict[str, str] | None:
    app_id = env("PUSHER_APP_ID")
    key = env("PUSHER_APP_KEY")
    secret = env("PUSHER_APP_SECRET")
    if not app_id or not key or not secret:
        return None
    return {
        "app_id": app_id,
        "key": key,
        "secret": secret,
        "cluster": env("PUSHER_CLUSTER", "us2") or "us2",
    }


def sign_trigger(
    settings: dict[str, str],
    body: str,
    timestamp: int | None = None,
) -> tuple[str, dict[str, str]]:
    """Build the events path and signed query parameters for a Pusher trigger."""
    path = f"/apps/{settings['app_id']}/events"
    params = {
        "auth_key": settings["key"],
        "auth_timestamp": str(timestamp if timestamp is not None else int(time.time())),
        "auth_version": "1.0",
        "body_md5": hashlib.md5(body.encode("utf-8")).hexdigest(),
    }
    query = urlencode(sorted(params.items()))
    to_sign = f"POST\n{path}\n{query}"
    params["auth_signature"] = hmac.new(
        settings["secret"].encode("utf-8"), to_sign.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return path, params


def trigger(channel: str, event: str, data: dict[str, Any]) -> None:
    settings = _pusher_settings()
    if settings is None:
        logger.debug("Pusher is not configured; dropping %s event.", event)
        return
    body = json.dumps({"name": event, "channels": [channel], "data": json.dumps(data)})
    path, params = sign_trigger(settings, body)
    resp = requests.post(
        f"https://api-{settings['cluster']}.pusher.com{path}",
        params=params,
        data=body,
        headers={"Content-Type": "application/json"},
        timeout=10,
    )
    resp.raise_for_status()


def _log_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Subscription change notification failed: %s", exc)


def notify_subscription_changed(account_id: str | None) -> Future | None:
    """Fire-and-forget push telling the client its subscription changed."""
    if not account_id:
        logger.warning("Cannot send subscription change notification: no account id.")
        return None
    try:
        future = _executor.submit(
            trigger, SUBSCRIPTION_CHANNEL, SUBSCRIPTION_EVENT, {"userId": account_id}
        )
    except RuntimeError as exc:
        logger.error("Subscription change notification for %s not queued: %s", account_id, exc)
        return None
    future.add_done_callback(_log_failure)
    return future
