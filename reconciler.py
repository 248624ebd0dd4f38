"""Subscription reconciliation: applies billing-provider events to accounts.

Events are decoded from the payload's declared type into one of four
variants and dispatched by variant type. Subscription events overwrite tier,
quota and expiry unconditionally, so replaying one event is idempotent but
two different events for the same account apply in delivery order.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Union

from pydantic import BaseModel, Field, ValidationError

import db
import notifications
from config import (
    premium_monthly_requests,
    pro_monthly_requests,
    yearly_grant_resets_quota,
)
from ledger import TIER_FREE, TIER_PREMIUM, TIER_PRO

logger = logging.getLogger("newsdigest.reconciler")

MONTHLY = "monthly"
YEARLY = "yearly"


class AccountNotFound(LookupError):
    pass


class InvalidBillingEvent(ValueError):
    pass


class SubscriptionCreated(BaseModel):
    kind: Literal["subscription_created"] = "subscription_created"
    event_id: str
    customer_id: str
    subscription_id: str
    tier: Literal["PREMIUM", "PRO"]
    frequency: Literal["monthly", "yearly"]


class SubscriptionUpdated(BaseModel):
    kind: Literal["subscription_updated"] = "subscription_updated"
    event_id: str
    customer_id: str
    subscription_id: str
    tier: Literal["PREMIUM", "PRO"]
    frequency: Literal["monthly", "yearly"]


class SubscriptionCanceled(BaseModel):
    kind: Literal["subscription_canceled"] = "subscription_canceled"
    event_id: str
    customer_id: str
    subscription_id: str | None = None


class CustomerIdentityLinked(BaseModel):
    kind: Literal["customer_identity_linked"] = "customer_identity_linked"
    event_id: str
    customer_id: str
    email: str | None = None


BillingEvent = Union[
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionCanceled,
    CustomerIdentityLinked,
]

EVENT_TYPES: dict[str, type[BaseModel]] = {
    "subscription.created": SubscriptionCreated,
    "subscription.activated": SubscriptionUpdated,
    "subscription.updated": SubscriptionUpdated,
    "subscription.canceled": SubscriptionCanceled,
    "subscription.cancelled": SubscriptionCanceled,
    "customer.created": CustomerIdentityLinked,
    "customer.updated": CustomerIdentityLinked,
}


class Grant(BaseModel):
    tier: str
    requests_remaining: int | None = Field(
        default=None, description="None leaves the current quota untouched."
    )
    expires_at: datetime


def event_type_of(payload: dict[str, Any]) -> str:
    return str(payload.get("event_type") or payload.get("type") or "").strip().lower()


def _custom_data(data: dict[str, Any]) -> dict[str, Any]:
    items = data.get("items") or []
    if not isinstance(items, list) or not items or not isinstance(items[0], dict):
        return {}
    price = items[0].get("price")
    if not isinstance(price, dict):
        return {}
    custom = price.get("custom_data") or price.get("customData")
    return custom if isinstance(custom, dict) else {}


def decode_event(payload: dict[str, Any]) -> BillingEvent | None:
    """Decode a provider payload. Returns None for event types this service ignores."""
    event_type = event_type_of(payload)
    model = EVENT_TYPES.get(event_type)
    if model is None:
        return None

    data = payload.get("data")
    if not isinstance(data, dict):
        raise InvalidBillingEvent(f"{event_type} has no data object.")

    fields: dict[str, Any] = {
        "event_id": payload.get("event_id") or payload.get("id"),
    }
    if model is CustomerIdentityLinked:
        fields["customer_id"] = data.get("id")
        email = data.get("email")
        fields["email"] = str(email).strip().lower() if email else None
    else:
        fields["customer_id"] = data.get("customer_id") or data.get("customerId")
        fields["subscription_id"] = data.get("id")
        if model is not SubscriptionCanceled:
            custom = _custom_data(data)
            fields["tier"] = str(custom.get("tier") or "").strip().upper()
            fields["frequency"] = str(custom.get("type") or custom.get("frequency") or "").strip().lower()

    try:
        return model.model_validate(fields)
    except ValidationError as exc:
        raise InvalidBillingEvent(f"Malformed {event_type} event: {exc}") from exc


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _monthly_allowance(tier: str) -> int:
    if tier == TIER_PRO:
        return pro_monthly_requests()
    return premium_monthly_requests()


def grant_for(tier: str, frequency: str, now: datetime) -> Grant:
    if tier not in {TIER_PREMIUM, TIER_PRO}:
        raise InvalidBillingEvent(f"Unsupported subscription tier: {tier}")
    if frequency == MONTHLY:
        return Grant(
            tier=tier,
            requests_remaining=_monthly_allowance(tier),
            expires_at=add_months(now, 1),
        )
    if frequency == YEARLY:
        return Grant(
            tier=tier,
            requests_remaining=_monthly_allowance(tier) if yearly_grant_resets_quota() else None,
            expires_at=add_months(now, 12),
        )
    raise InvalidBillingEvent(f"Unsupported billing frequency: {frequency}")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _link_customer(event: CustomerIdentityLinked, now: datetime) -> dict[str, Any]:
    account = db.get_account_by_email(event.email) if event.email else None
    if account is None:
        account = db.get_account_by_billing_customer_id(event.customer_id)
    if account is None:
        raise AccountNotFound(f"No account for customer {event.customer_id}.")
    if account.get("billing_customer_id") == event.customer_id:
        return account
    updated = db.set_billing_customer_id(account["id"], event.customer_id)
    logger.info("Billing customer %s linked to account %s", event.customer_id, account["id"])
    return updated or account


def _account_for_customer(customer_id: str) -> dict[str, Any]:
    account = db.get_account_by_billing_customer_id(customer_id)
    if account is None:
        raise AccountNotFound(f"No account for customer {customer_id}.")
    return account


def _apply_subscription(
    event: SubscriptionCreated | SubscriptionUpdated, now: datetime
) -> dict[str, Any]:
    account = _account_for_customer(event.customer_id)
    grant = grant_for(event.tier, event.frequency, now)
    updated = db.apply_subscription(
        account["id"],
        tier=grant.tier,
        requests_remaining=grant.requests_remaining,
        expires_at=grant.expires_at,
        subscription_id=event.subscription_id,
    )
    logger.info(
        "Subscription %s applied for account %s: %s %s",
        event.subscription_id,
        account["id"],
        event.tier,
        event.frequency,
    )
    notifications.notify_subscription_changed(account["id"])
    return updated or account


def _cancel_subscription(event: SubscriptionCanceled, now: datetime) -> dict[str, Any]:
    account = _account_for_customer(event.customer_id)
    updated = db.apply_subscription(
        account["id"],
        tier=TIER_FREE,
        requests_remaining=0,
        expires_at=None,
        subscription_id=None,
    )
    logger.info("Subscription canceled for account %s", account["id"])
    return updated or account


_HANDLERS: dict[type[BaseModel], Callable[[Any, datetime], dict[str, Any]]] = {
    SubscriptionCreated: _apply_subscription,
    SubscriptionUpdated: _apply_subscription,
    SubscriptionCanceled: _cancel_subscription,
    CustomerIdentityLinked: _link_customer,
}


def apply(event: BillingEvent, now: datetime | None = None) -> dict[str, Any]:
    """Apply one billing event, returning the account as stored afterwards."""
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unhandled billing event: {type(event).__name__}")
    return handler(event, now or _now_utc())
