from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, AsyncIterator

import psycopg
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError
from standardwebhooks import Webhook

import db
import gate
import generation
import ledger
import reconciler
import scheduler
from auth import create_token, generate_api_key, hash_password, verify_password
from config import (
    auth_secret,
    billing_signature_tolerance_seconds,
    billing_webhook_secret,
    cors_origins,
    env,
    free_tier_requests,
    is_production,
    payments_enabled,
    quota_reset_enabled,
    token_ttl_seconds,
    validate_env,
)
from gate import AccessRejected, AdmittedRequest, ClientInfo
from generation import ProviderError

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("newsdigest")

INVALID_REQUEST = "INVALID_REQUEST"
PROVIDER_ERROR = "PROVIDER_ERROR"
SIGNATURE_INVALID = "SIGNATURE_INVALID"
ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
INTERNAL = "INTERNAL"

REJECTION_STATUS = {
    gate.NOT_AUTHENTICATED: 401,
    gate.INVALID_TOKEN: 401,
    gate.EXPIRED_TOKEN: 401,
    gate.INVALID_KEY: 401,
    ledger.QUOTA_EXCEEDED: 429,
    ledger.SUBSCRIPTION_EXPIRED: 403,
}

DEFAULT_NEWS_DOMAINS = (
    "elpais.com",
    "elmundo.es",
    "abc.es",
    "lavanguardia.com",
    "infobae.com",
    "lemonde.fr",
    "lefigaro.fr",
    "corriere.it",
    "repubblica.it",
    "spiegel.de",
    "faz.net",
    "cnn.com",
    "bbc.com",
    "nytimes.com",
    "washingtonpost.com",
    "theguardian.com",
    "reuters.com",
    "bloomberg.com",
    "apnews.com",
    "npr.org",
    "wsj.com",
    "ft.com",
    "clarin.com",
    "lanacion.com.ar",
    "*times.com",
    "*yahoo.com",
)


class RegisterRequest(BaseModel):
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class ExtensionRequest(BaseModel):
    external_id: str


class GenerateRequest(BaseModel):
    text: str


class AccountResponse(BaseModel):
    id: str
    email: str | None
    api_key: str
    tier: str
    requests_remaining: int
    subscription_expires_at: str | None
    provisional: bool


class AuthResponse(BaseModel):
    token: str
    account: AccountResponse


class UsageResponse(BaseModel):
    tier: str
    requests_remaining: int
    subscription_expires_at: str | None


validate_env()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    reset_task = None
    if quota_reset_enabled():
        reset_task = asyncio.create_task(scheduler.run_forever())
    yield
    if reset_task is not None:
        reset_task.cancel()
        try:
            await reset_task
        except asyncio.CancelledError:
            logger.info("Quota reset scheduler stopped")


app = FastAPI(title="NewsDigest Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(code: str, message: str) -> dict[str, str]:
    return {"code": code, "message": message}


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    detail: dict[str, Any] = _error(INTERNAL, "Something went wrong.")
    if not is_production():
        detail["error"] = str(exc)
    return JSONResponse(status_code=500, content={"detail": detail})


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Any) -> str | None:
    return value.isoformat() if isinstance(value, datetime) else None


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "Unknown"


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        user_agent=request.headers.get("user-agent") or "Unknown",
        ip_address=_get_client_ip(request),
    )


def _rejected(exc: AccessRejected) -> HTTPException:
    return HTTPException(
        status_code=REJECTION_STATUS.get(exc.reason, 401),
        detail=_error(exc.reason, exc.message),
    )


def _require_account(request: Request) -> dict[str, Any]:
    try:
        return gate.resolve_account(
            request.headers.get("authorization"),
            request.headers.get("x-api-key"),
        )
    except AccessRejected as exc:
        raise _rejected(exc) from exc


async def _admit(request: Request) -> AdmittedRequest:
    try:
        return await asyncio.to_thread(
            gate.admit,
            request.headers.get("authorization"),
            request.headers.get("x-api-key"),
            endpoint=request.url.path,
            client=_client_info(request),
        )
    except AccessRejected as exc:
        raise _rejected(exc) from exc


def _issue_token(account: dict[str, Any]) -> str:
    return create_token(
        {"sub": account["id"], "email": account.get("email")},
        auth_secret(),
        token_ttl_seconds(),
    )


def _account_response(account: dict[str, Any]) -> AccountResponse:
    return AccountResponse(
        id=account["id"],
        email=account.get("email"),
        api_key=account["api_key"],
        tier=ledger.normalize_tier(account.get("tier")),
        requests_remaining=int(account.get("requests_remaining") or 0),
        subscription_expires_at=_isoformat(account.get("subscription_expires_at")),
        provisional=bool(account.get("provisional")),
    )


def _validate_credentials(email: str, password: str) -> str:
    email = email.strip().lower()
    if not re.fullmatch(r"[^@]+@[^@]+\.[^@]+", email):
        raise HTTPException(status_code=400, detail=_error(INVALID_REQUEST, "Email address is invalid."))
    if len(password) < 8:
        raise HTTPException(
            status_code=400,
            detail=_error(INVALID_REQUEST, "Password must be at least 8 characters long."),
        )
    return email


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


def verify_paddle_signature(raw_body: bytes, header: str, secret: str, tolerance_seconds: int) -> None:
    """Check a ``ts=...;h1=...`` signature computed over ``{ts}:{body}``."""
    parts: dict[str, list[str]] = {}
    for item in header.split(";"):
        key, _, value = item.strip().partition("=")
        if key and value:
            parts.setdefault(key, []).append(value)
    timestamps = parts.get("ts") or []
    signatures = parts.get("h1") or []
    if not timestamps or not signatures:
        raise ValueError("Malformed webhook signature header.")
    try:
        timestamp = int(timestamps[0])
    except ValueError as exc:
        raise ValueError("Malformed webhook signature timestamp.") from exc
    if tolerance_seconds > 0 and abs(time.time() - timestamp) > tolerance_seconds:
        raise ValueError("Webhook signature timestamp outside tolerance.")
    signed = f"{timestamp}:".encode("utf-8") + raw_body
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise ValueError("Invalid webhook signature.")


def _verify_billing_webhook(raw_body: bytes, request: Request) -> None:
    """Verify webhook authenticity using standardwebhooks or the provider HMAC header."""
    secret = billing_webhook_secret()
    headers = {
        "webhook-id": request.headers.get("webhook-id", ""),
        "webhook-signature": request.headers.get("webhook-signature", ""),
        "webhook-timestamp": request.headers.get("webhook-timestamp", ""),
    }
    if headers["webhook-signature"]:
        Webhook(secret).verify(raw_body.decode("utf-8"), headers)
        return
    signature_header = request.headers.get("paddle-signature")
    if not signature_header:
        raise ValueError("Missing webhook signature header.")
    verify_paddle_signature(raw_body, signature_header, secret, billing_signature_tolerance_seconds())


def _webhook_event_id(request: Request, payload: dict[str, Any]) -> str:
    return str(
        request.headers.get("webhook-id")
        or payload.get("event_id")
        or payload.get("id")
        or uuid.uuid4()
    )


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/auth/register", response_model=AuthResponse, status_code=201)
def register(payload: RegisterRequest) -> AuthResponse:
    email = _validate_credentials(payload.email, payload.password)
    if db.get_account_by_email(email):
        raise HTTPException(status_code=409, detail=_error(INVALID_REQUEST, "User already exists with this email."))
    try:
        account = db.create_account(
            account_id=str(uuid.uuid4()),
            email=email,
            password_hash=hash_password(payload.password),
            api_key=generate_api_key(),
            tier=ledger.TIER_FREE,
            requests_remaining=free_tier_requests(),
        )
    except psycopg.errors.UniqueViolation as exc:
        raise HTTPException(status_code=409, detail=_error(INVALID_REQUEST, "User already exists with this email.")) from exc
    logger.info("Account registered: %s", account["id"])
    return AuthResponse(token=_issue_token(account), account=_account_response(account))


@app.post("/api/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest) -> AuthResponse:
    account = db.get_account_by_email(payload.email.strip().lower())
    if not account or not verify_password(payload.password, account.get("password_hash")):
        raise HTTPException(status_code=401, detail=_error(gate.NOT_AUTHENTICATED, "Incorrect email or password."))
    return AuthResponse(token=_issue_token(account), account=_account_response(account))


@app.get("/api/auth/me", response_model=AccountResponse)
def me(raw_request: Request) -> AccountResponse:
    return _account_response(_require_account(raw_request))


@app.post("/api/auth/refresh-api-key")
def refresh_api_key(raw_request: Request) -> dict[str, str]:
    account = _require_account(raw_request)
    api_key = generate_api_key()
    db.update_api_key(account["id"], api_key)
    logger.info("API key rotated for account %s", account["id"])
    return {"api_key": api_key}


@app.post("/api/auth/extension", response_model=AccountResponse)
def provision_extension_account(payload: ExtensionRequest) -> AccountResponse:
    external_id = payload.external_id.strip()
    if not external_id:
        raise HTTPException(status_code=400, detail=_error(INVALID_REQUEST, "external_id is required."))
    account = db.get_account_by_external_id(external_id)
    if account is None:
        try:
            account = db.create_account(
                account_id=str(uuid.uuid4()),
                external_id=external_id,
                api_key=generate_api_key(),
                tier=ledger.TIER_FREE,
                requests_remaining=free_tier_requests(),
                provisional=True,
            )
        except psycopg.errors.UniqueViolation:
            account = db.get_account_by_external_id(external_id)
            if account is None:
                raise
        else:
            logger.info("Provisional extension account created: %s", account["id"])
    if not account.get("provisional"):
        raise HTTPException(
            status_code=409,
            detail=_error(INVALID_REQUEST, "Account is already registered. Please log in."),
        )
    return _account_response(account)


@app.post("/api/auth/upgrade", response_model=AuthResponse)
def upgrade_extension_account(payload: RegisterRequest, raw_request: Request) -> AuthResponse:
    account = _require_account(raw_request)
    email = _validate_credentials(payload.email, payload.password)
    if not account.get("provisional"):
        raise HTTPException(status_code=409, detail=_error(INVALID_REQUEST, "Account is already registered."))
    existing = db.get_account_by_email(email)
    if existing and existing["id"] != account["id"]:
        raise HTTPException(status_code=409, detail=_error(INVALID_REQUEST, "User already exists with this email."))
    try:
        upgraded = db.upgrade_provisional_account(account["id"], email, hash_password(payload.password))
    except psycopg.errors.UniqueViolation as exc:
        raise HTTPException(status_code=409, detail=_error(INVALID_REQUEST, "User already exists with this email.")) from exc
    if not upgraded:
        raise HTTPException(status_code=409, detail=_error(INVALID_REQUEST, "Account is already registered."))
    account = db.get_account_by_id(account["id"]) or account
    logger.info("Provisional account upgraded: %s", account["id"])
    return AuthResponse(token=_issue_token(account), account=_account_response(account))


async def _complete(admitted: AdmittedRequest, status_code: int) -> None:
    await asyncio.to_thread(admitted.complete, status_code)


async def _relay(
    admitted: AdmittedRequest,
    stream: AsyncGenerator[str, None],
    first: str | None,
) -> AsyncGenerator[str, None]:
    status = ledger.CLIENT_CLOSED_REQUEST
    try:
        if first is not None:
            yield _sse({"content": first})
        async for chunk in stream:
            yield _sse({"content": chunk})
        status = 200
        yield "data: [DONE]\n\n"
    except ProviderError as exc:
        status = exc.status_code
        logger.warning("Summary stream failed mid-flight: %s", exc.message)
        yield _sse({"error": exc.message, "code": PROVIDER_ERROR})
    finally:
        await _complete(admitted, status)
        await stream.aclose()


@app.post("/api/summary/generate")
async def generate_summary(raw_request: Request) -> StreamingResponse:
    admitted = await _admit(raw_request)
    try:
        payload = GenerateRequest.model_validate(await raw_request.json())
    except (ValueError, ValidationError) as exc:
        await _complete(admitted, 400)
        raise HTTPException(status_code=400, detail=_error(INVALID_REQUEST, "Text is required.")) from exc
    text = payload.text.strip()
    if not text:
        await _complete(admitted, 400)
        raise HTTPException(status_code=400, detail=_error(INVALID_REQUEST, "Text is required."))

    stream = generation.stream_summary(text)
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = None
    except ProviderError as exc:
        await _complete(admitted, exc.status_code)
        raise HTTPException(status_code=exc.status_code, detail=_error(PROVIDER_ERROR, exc.message)) from exc
    except BaseException:
        await _complete(admitted, ledger.CLIENT_CLOSED_REQUEST)
        raise

    return StreamingResponse(
        _relay(admitted, stream, first),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/api/summary/usage", response_model=UsageResponse)
def get_usage(raw_request: Request) -> UsageResponse:
    account = _require_account(raw_request)
    return UsageResponse(
        tier=ledger.normalize_tier(account.get("tier")),
        requests_remaining=int(account.get("requests_remaining") or 0),
        subscription_expires_at=_isoformat(account.get("subscription_expires_at")),
    )


@app.get("/api/summary/domains")
def get_allowed_news_domains() -> dict[str, list[str]]:
    configured = env("ALLOWED_NEWS_DOMAINS")
    if configured:
        domains = [domain.strip() for domain in configured.split(",") if domain.strip()]
    else:
        domains = list(DEFAULT_NEWS_DOMAINS)
    return {"domains": domains}


@app.post("/api/webhooks/notify")
async def billing_webhook(request: Request) -> dict[str, Any]:
    if not payments_enabled():
        return {"received": False}
    raw_body = await request.body()
    try:
        _verify_billing_webhook(raw_body, request)
    except Exception as exc:
        logger.warning(
            "Billing webhook verification failed from %s (%d bytes): %s",
            _get_client_ip(request),
            len(raw_body),
            exc,
        )
        raise HTTPException(status_code=401, detail=_error(SIGNATURE_INVALID, "Invalid webhook signature.")) from exc

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Billing webhook body is not valid JSON; ignoring.")
        return {"received": True, "status": "ignored"}
    if not isinstance(payload, dict):
        logger.warning("Billing webhook body is not an object; ignoring.")
        return {"received": True, "status": "ignored"}

    event_type = reconciler.event_type_of(payload)
    event_id = _webhook_event_id(request, payload)
    inserted = db.insert_webhook_event(
        event_id=event_id,
        provider="billing",
        event_type=event_type or None,
        status="received",
        raw=payload,
        error=None,
    )
    if not inserted:
        logger.info("Duplicate billing event %s ignored", event_id)
        return {"received": True, "status": "duplicate"}

    try:
        event = reconciler.decode_event(payload)
    except reconciler.InvalidBillingEvent as exc:
        logger.warning("Ignoring malformed billing event %s: %s", event_id, exc)
        db.mark_webhook_event_processed(event_id, _now_utc(), "invalid_payload")
        return {"received": True, "status": "ignored"}
    except Exception as exc:
        logger.exception("Billing event %s could not be decoded", event_id)
        db.forget_webhook_event(event_id)
        raise HTTPException(status_code=500, detail=_error(INTERNAL, "Error handling webhook.")) from exc
    if event is None:
        db.mark_webhook_event_processed(event_id, _now_utc(), "ignored")
        return {"received": True, "status": "ignored"}

    try:
        reconciler.apply(event)
    except reconciler.AccountNotFound as exc:
        logger.warning("Billing event %s (%s): %s", event_id, event_type, exc)
        db.forget_webhook_event(event_id)
        raise HTTPException(status_code=404, detail=_error(ACCOUNT_NOT_FOUND, "User not found.")) from exc
    except Exception as exc:
        logger.exception("Billing event %s processing failed", event_id)
        db.forget_webhook_event(event_id)
        raise HTTPException(status_code=500, detail=_error(INTERNAL, "Error handling webhook.")) from exc

    db.mark_webhook_event_processed(event_id, _now_utc(), "processed")
    return {"received": True, "status": "processed"}


@app.post("/api/admin/quota-reset")
def trigger_quota_reset() -> dict[str, Any]:
    if is_production():
        raise HTTPException(status_code=403, detail=_error(INVALID_REQUEST, "Manual reset is disabled in production."))
    return asdict(scheduler.reset_free_quotas())
