from __future__ import annotations

import os
from datetime import datetime
from functools import lru_cache
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set.")
    return url


def get_connection():
    return psycopg.connect(_database_url(), row_factory=dict_row)


@lru_cache(maxsize=1)
def ensure_schema() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    email TEXT UNIQUE,
                    external_id TEXT UNIQUE,
                    password_hash TEXT,
                    api_key TEXT NOT NULL UNIQUE,
                    tier TEXT NOT NULL DEFAULT 'FREE',
                    requests_remaining INTEGER NOT NULL DEFAULT 0
                        CHECK (requests_remaining >= 0),
                    subscription_expires_at TIMESTAMPTZ,
                    last_quota_reset_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    billing_customer_id TEXT UNIQUE,
                    billing_subscription_id TEXT UNIQUE,
                    provisional BOOLEAN NOT NULL DEFAULT false,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS accounts_free_reset_idx
                ON accounts (tier, last_quota_reset_at);
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS usage_records (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL REFERENCES accounts(id),
                    endpoint TEXT NOT NULL,
                    status INTEGER NOT NULL,
                    latency_ms INTEGER NOT NULL,
                    user_agent TEXT NOT NULL,
                    ip_address TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS usage_records_account_idx
                ON usage_records (account_id, created_at DESC);
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS webhook_events (
                    event_id TEXT PRIMARY KEY,
                    provider TEXT NOT NULL,
                    event_type TEXT,
                    status TEXT NOT NULL,
                    raw JSONB NOT NULL,
                    error TEXT,
                    received_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    processed_at TIMESTAMPTZ
                );
                """
            )


def _fetch_account(column: str, value: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT * FROM accounts WHERE {column} = %s", (value,))
            row = cur.fetchone()
            return dict(row) if row else None


def create_account(
    *,
    account_id: str,
    api_key: str,
    tier: str,
    requests_remaining: int,
    email: str | None = None,
    password_hash: str | None = None,
    external_id: str | None = None,
    provisional: bool = False,
) -> dict[str, Any]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO accounts (
                    id, email, external_id, password_hash, api_key,
                    tier, requests_remaining, provisional
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    account_id,
                    email,
                    external_id,
                    password_hash,
                    api_key,
                    tier,
                    requests_remaining,
                    provisional,
                ),
            )
            return dict(cur.fetchone())


def get_account_by_id(account_id: str) -> dict[str, Any] | None:
    return _fetch_account("id", account_id)


def get_account_by_email(email: str) -> dict[str, Any] | None:
    return _fetch_account("email", email)


def get_account_by_api_key(api_key: str) -> dict[str, Any] | None:
    return _fetch_account("api_key", api_key)


def get_account_by_external_id(external_id: str) -> dict[str, Any] | None:
    return _fetch_account("external_id", external_id)


def get_account_by_billing_customer_id(customer_id: str) -> dict[str, Any] | None:
    return _fetch_account("billing_customer_id", customer_id)


def update_api_key(account_id: str, api_key: str) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE accounts SET api_key = %s, updated_at = now() WHERE id = %s",
                (api_key, account_id),
            )


def upgrade_provisional_account(account_id: str, email: str, password_hash: str) -> bool:
    """Attach credentials to a provisional account. Only ever flips the flag once."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE accounts
                SET email = %s, password_hash = %s, provisional = false, updated_at = now()
                WHERE id = %s AND provisional
                RETURNING id
                """,
                (email, password_hash, account_id),
            )
            return cur.fetchone() is not None


def decrement_requests_remaining(account_id: str) -> int | None:
    """Decrement-if-positive. Returns the new count, or None when nothing was debited."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE accounts
                SET requests_remaining = requests_remaining - 1, updated_at = now()
                WHERE id = %s AND requests_remaining > 0
                RETURNING requests_remaining
                """,
                (account_id,),
            )
            row = cur.fetchone()
            return int(row["requests_remaining"]) if row else None


def set_billing_customer_id(account_id: str, customer_id: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE accounts
                SET billing_customer_id = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (customer_id, account_id),
            )
            row = cur.fetchone()
            return dict(row) if row else None


def apply_subscription(
    account_id: str,
    *,
    tier: str,
    requests_remaining: int | None,
    expires_at: datetime | None,
    subscription_id: str | None,
) -> dict[str, Any] | None:
    """Overwrite tier and expiry. A None quota leaves requests_remaining untouched."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE accounts
                SET tier = %s,
                    requests_remaining = COALESCE(%s, requests_remaining),
                    subscription_expires_at = %s,
                    billing_subscription_id = COALESCE(%s, billing_subscription_id),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (tier, requests_remaining, expires_at, subscription_id, account_id),
            )
            row = cur.fetchone()
            return dict(row) if row else None


def list_free_accounts_due_for_reset(cutoff: datetime) -> list[dict[str, Any]]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM accounts
                WHERE tier = 'FREE' AND last_quota_reset_at <= %s
                ORDER BY last_quota_reset_at
                """,
                (cutoff,),
            )
            return [dict(row) for row in cur.fetchall()]


def reset_requests_remaining(account_id: str, requests_remaining: int, reset_at: datetime) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE accounts
                SET requests_remaining = %s, last_quota_reset_at = %s, updated_at = now()
                WHERE id = %s AND tier = 'FREE'
                """,
                (requests_remaining, reset_at, account_id),
            )


def insert_usage_record(
    *,
    record_id: str,
    account_id: str,
    endpoint: str,
    status: int,
    latency_ms: int,
    user_agent: str,
    ip_address: str,
) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO usage_records (
                    id, account_id, endpoint, status, latency_ms, user_agent, ip_address
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (record_id, account_id, endpoint, status, latency_ms, user_agent, ip_address),
            )


def insert_webhook_event(
    *,
    event_id: str,
    provider: str,
    event_type: str | None,
    status: str,
    raw: dict[str, Any],
    error: str | None,
) -> bool:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO webhook_events (event_id, provider, event_type, status, raw, error)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (event_id) DO NOTHING
                RETURNING event_id
                """,
                (event_id, provider, event_type, status, Jsonb(raw), error),
            )
            return cur.fetchone() is not None


def mark_webhook_event_processed(event_id: str, processed_at: datetime, status: str) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE webhook_events
                SET processed_at = %s, status = %s
                WHERE event_id = %s
                """,
                (processed_at, status, event_id),
            )


def forget_webhook_event(event_id: str) -> None:
    """Drop a delivery that failed so the provider's redelivery is processed again."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM webhook_events WHERE event_id = %s AND processed_at IS NULL",
                (event_id,),
            )
