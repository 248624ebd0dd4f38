"""
Pytest configuration for the summary backend tests.

Environment is set before any application module is imported, and the
``memory_db`` fixture swaps every ``db`` function for an in-memory store so
no PostgreSQL server is needed.
"""

import copy
import os
import threading
from datetime import datetime, timezone

os.environ["ENVIRONMENT"] = "development"
os.environ["AUTH_SECRET"] = "test-auth-secret-with-at-least-32-characters"
os.environ["PAYMENTS_ENABLED"] = "true"
os.environ["BILLING_WEBHOOK_SECRET"] = "test-billing-secret"
os.environ["QUOTA_RESET_ENABLED"] = "false"
os.environ["OPENAI_API_KEY"] = "test-openai-key"
os.environ["FREE_TIER_REQUESTS"] = "30"
for _name in ("PUSHER_APP_ID", "PUSHER_APP_KEY", "PUSHER_APP_SECRET", "DATABASE_URL", "YEARLY_GRANT_RESETS_QUOTA"):
    os.environ.pop(_name, None)

import psycopg
import pytest

import db


class MemoryStore:
    """Dict-backed stand-in for the ``db`` module's functions."""

    UNIQUE_COLUMNS = ("email", "external_id", "api_key", "billing_customer_id", "billing_subscription_id")

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.usage_records: list[dict] = []
        self.webhook_events: dict[str, dict] = {}
        self.lock = threading.Lock()
        self.fail_reset_for: set[str] = set()

    def _check_unique(self, account_id, values):
        for column in self.UNIQUE_COLUMNS:
            value = values.get(column)
            if value is None:
                continue
            for other in self.accounts.values():
                if other["id"] != account_id and other.get(column) == value:
                    raise psycopg.errors.UniqueViolation(f"duplicate {column}")

    def _find(self, column, value):
        for account in self.accounts.values():
            if account.get(column) == value:
                return copy.deepcopy(account)
        return None

    def add_account(self, **fields):
        now = datetime.now(timezone.utc)
        account = {
            "id": fields.pop("id", f"acct-{len(self.accounts) + 1}"),
            "email": None,
            "external_id": None,
            "password_hash": None,
            "api_key": f"key-{len(self.accounts) + 1}",
            "tier": "FREE",
            "requests_remaining": 30,
            "subscription_expires_at": None,
            "last_quota_reset_at": now,
            "billing_customer_id": None,
            "billing_subscription_id": None,
            "provisional": False,
            "created_at": now,
            "updated_at": now,
        }
        account.update(fields)
        self._check_unique(account["id"], account)
        self.accounts[account["id"]] = account
        return copy.deepcopy(account)

    # db functions

    def create_account(self, *, account_id, api_key, tier, requests_remaining, email=None,
                       password_hash=None, external_id=None, provisional=False):
        return self.add_account(
            id=account_id,
            api_key=api_key,
            tier=tier,
            requests_remaining=requests_remaining,
            email=email,
            password_hash=password_hash,
            external_id=external_id,
            provisional=provisional,
        )

    def get_account_by_id(self, account_id):
        account = self.accounts.get(account_id)
        return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email):
        return self._find("email", email)

    def get_account_by_api_key(self, api_key):
        return self._find("api_key", api_key)

    def get_account_by_external_id(self, external_id):
        return self._find("external_id", external_id)

    def get_account_by_billing_customer_id(self, customer_id):
        return self._find("billing_customer_id", customer_id)

    def update_api_key(self, account_id, api_key):
        self._check_unique(account_id, {"api_key": api_key})
        self.accounts[account_id]["api_key"] = api_key

    def upgrade_provisional_account(self, account_id, email, password_hash):
        with self.lock:
            account = self.accounts.get(account_id)
            if not account or not account["provisional"]:
                return False
            self._check_unique(account_id, {"email": email})
            account.update(email=email, password_hash=password_hash, provisional=False)
            return True

    def decrement_requests_remaining(self, account_id):
        with self.lock:
            account = self.accounts.get(account_id)
            if not account or account["requests_remaining"] <= 0:
                return None
            account["requests_remaining"] -= 1
            return account["requests_remaining"]

    def set_billing_customer_id(self, account_id, customer_id):
        account = self.accounts.get(account_id)
        if not account:
            return None
        self._check_unique(account_id, {"billing_customer_id": customer_id})
        account["billing_customer_id"] = customer_id
        return copy.deepcopy(account)

    def apply_subscription(self, account_id, *, tier, requests_remaining, expires_at, subscription_id):
        account = self.accounts.get(account_id)
        if not account:
            return None
        account["tier"] = tier
        if requests_remaining is not None:
            account["requests_remaining"] = requests_remaining
        account["subscription_expires_at"] = expires_at
        if subscription_id is not None:
            account["billing_subscription_id"] = subscription_id
        return copy.deepcopy(account)

    def list_free_accounts_due_for_reset(self, cutoff):
        return [
            copy.deepcopy(account)
            for account in self.accounts.values()
            if account["tier"] == "FREE" and account["last_quota_reset_at"] <= cutoff
        ]

    def reset_requests_remaining(self, account_id, requests_remaining, reset_at):
        if account_id in self.fail_reset_for:
            raise psycopg.OperationalError("connection lost")
        account = self.accounts[account_id]
        if account["tier"] == "FREE":
            account["requests_remaining"] = requests_remaining
            account["last_quota_reset_at"] = reset_at

    def insert_usage_record(self, **record):
        self.usage_records.append(record)

    def insert_webhook_event(self, *, event_id, provider, event_type, status, raw, error):
        if event_id in self.webhook_events:
            return False
        self.webhook_events[event_id] = {
            "provider": provider,
            "event_type": event_type,
            "status": status,
            "raw": raw,
            "error": error,
            "processed_at": None,
        }
        return True

    def mark_webhook_event_processed(self, event_id, processed_at, status):
        event = self.webhook_events[event_id]
        event.update(processed_at=processed_at, status=status)

    def forget_webhook_event(self, event_id):
        event = self.webhook_events.get(event_id)
        if event and event["processed_at"] is None:
            del self.webhook_events[event_id]


DB_FUNCTIONS = (
    "create_account",
    "get_account_by_id",
    "get_account_by_email",
    "get_account_by_api_key",
    "get_account_by_external_id",
    "get_account_by_billing_customer_id",
    "update_api_key",
    "upgrade_provisional_account",
    "decrement_requests_remaining",
    "set_billing_customer_id",
    "apply_subscription",
    "list_free_accounts_due_for_reset",
    "reset_requests_remaining",
    "insert_usage_record",
    "insert_webhook_event",
    "mark_webhook_event_processed",
    "forget_webhook_event",
)


@pytest.fixture
def memory_db(monkeypatch):
    store = MemoryStore()
    for name in DB_FUNCTIONS:
        monkeypatch.setattr(db, name, getattr(store, name))
    return store


@pytest.fixture
def sent_notifications(monkeypatch):
    """Record subscription change notifications instead of pushing them."""
    import notifications

    sent = []
    monkeypatch.setattr(notifications, "notify_subscription_changed", sent.append)
    return sent
