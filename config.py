from __future__ import annotations

import logging
import os

logger = logging.getLogger("newsdigest")


def env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value


def bool_env(name: str, default: str | None = None) -> bool:
    raw = env(name, default)
    if raw is None:
        return False
    return raw.strip().lower() in {"1", "true", "yes"}


def int_env(name: str, default: int) -> int:
    return int(env(name, str(default)) or default)


def environment() -> str:
    return (env("ENVIRONMENT", "development") or "development").strip().lower()


def is_production() -> bool:
    return environment() in {"production", "prod"}


def strict_env() -> bool:
    if os.getenv("STRICT_ENV_VALIDATION") is not None:
        return bool_env("STRICT_ENV_VALIDATION", "true")
    return is_production()


def payments_enabled() -> bool:
    if os.getenv("PAYMENTS_ENABLED") is not None:
        return bool_env("PAYMENTS_ENABLED", "true")
    return is_production()


def auth_secret() -> str:
    """Load the shared secret used for signing bearer tokens."""
    secret = env("AUTH_SECRET")
    if not secret:
        raise RuntimeError("AUTH_SECRET is not set.")
    return secret


def token_ttl_seconds() -> int:
    return int_env("AUTH_TOKEN_TTL_SECONDS", 30 * 24 * 3600)


def free_tier_requests() -> int:
    return int_env("FREE_TIER_REQUESTS", 30)


def premium_monthly_requests() -> int:
    return int_env("PREMIUM_MONTHLY_REQUESTS", 500)


def pro_monthly_requests() -> int:
    return int_env("PRO_MONTHLY_REQUESTS", 5000)


def yearly_grant_resets_quota() -> bool:
    return bool_env("YEARLY_GRANT_RESETS_QUOTA", "false")


def free_reset_interval_days() -> int:
    return int_env("FREE_RESET_INTERVAL_DAYS", 30)


def quota_reset_hour_utc() -> int:
    return int_env("QUOTA_RESET_HOUR_UTC", 2)


def quota_reset_enabled() -> bool:
    return bool_env("QUOTA_RESET_ENABLED", "true")


def billing_webhook_secret() -> str:
    secret = env("BILLING_WEBHOOK_SECRET")
    if not secret:
        raise RuntimeError("BILLING_WEBHOOK_SECRET is not set.")
    return secret


def billing_signature_tolerance_seconds() -> int:
    return int_env("BILLING_SIGNATURE_TOLERANCE_SECONDS", 300)


def frontend_url() -> str:
    return (env("FRONTEND_URL", "http://localhost:3000") or "").rstrip("/")


def _parse_origins(value: str | None) -> list[str]:
    if not value:
        return []
    origins: list[str] = []
    for origin in value.split(","):
        origin = origin.strip()
        if not origin or origin == "*":
            continue
        origins.append(origin.rstrip("/"))
    return origins


def cors_origins() -> list[str]:
    origins = [frontend_url()]
    for origin in _parse_origins(env("CORS_ORIGINS")):
        if origin not in origins:
            origins.append(origin)
    return origins


def validate_env() -> None:
    errors: list[str] = []
    warnings: list[str] = []
    strict = strict_env()

    secret = env("AUTH_SECRET")
    if not secret:
        errors.append("AUTH_SECRET is required.")
    elif strict and len(secret) < 32:
        errors.append("AUTH_SECRET must be at least 32 characters.")

    if payments_enabled():
        if not env("BILLING_WEBHOOK_SECRET"):
            errors.append("BILLING_WEBHOOK_SECRET is required.")
    else:
        warnings.append("Payments disabled; billing webhooks will be acknowledged and dropped.")

    if not env("OPENAI_API_KEY"):
        if strict:
            errors.append("OPENAI_API_KEY is required.")
        else:
            warnings.append("OPENAI_API_KEY is not set; summary generation will fail.")

    for name, default in (
        ("FREE_TIER_REQUESTS", 30),
        ("PREMIUM_MONTHLY_REQUESTS", 500),
        ("PRO_MONTHLY_REQUESTS", 5000),
        ("FREE_RESET_INTERVAL_DAYS", 30),
        ("QUOTA_RESET_HOUR_UTC", 2),
        ("BILLING_SIGNATURE_TOLERANCE_SECONDS", 300),
    ):
        try:
            int_env(name, default)
        except ValueError:
            errors.append(f"{name} must be an integer.")

    try:
        if not 0 <= quota_reset_hour_utc() <= 23:
            errors.append("QUOTA_RESET_HOUR_UTC must be between 0 and 23.")
    except ValueError:
        pass

    if errors:
        raise RuntimeError("Config errors: " + "; ".join(errors))
    for warning in warnings:
        logger.warning(warning)
