from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from typing import Any

PASSWORD_SCHEME = "pbkdf2_sha256"
PASSWORD_ITERATIONS = 120_000
SALT_BYTES = 16


class InvalidToken(ValueError):
    """Bearer token is malformed or its signature does not match."""


class ExpiredToken(InvalidToken):
    """Bearer token was valid but its expiry has passed."""


def _urlsafe(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _from_urlsafe(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(secret: str, message: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return _urlsafe(digest)


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)


def hash_password(password: str) -> str:
    """Return ``scheme$iterations$salt$digest`` so the work factor can be raised later."""
    salt = secrets.token_bytes(SALT_BYTES)
    digest = _derive(password, salt, PASSWORD_ITERATIONS)
    return f"{PASSWORD_SCHEME}${PASSWORD_ITERATIONS}${_urlsafe(salt)}${_urlsafe(digest)}"


def verify_password(password: str, stored_hash: str | None) -> bool:
    # Extension-provisioned accounts have no password until upgraded.
    if not stored_hash:
        return False
    try:
        scheme, iterations, salt, digest = stored_hash.split("$")
        if scheme != PASSWORD_SCHEME:
            return False
        candidate = _derive(password, _from_urlsafe(salt), int(iterations))
        return hmac.compare_digest(candidate, _from_urlsafe(digest))
    except ValueError:
        return False


def create_token(claims: dict[str, Any], secret: str, ttl_seconds: int) -> str:
    """Sign ``claims`` plus ``iat``/``exp`` into a ``body.signature`` bearer token."""
    if not claims.get("sub"):
        raise ValueError("Token claims need a subject.")
    issued_at = int(time.time())
    body = _urlsafe(
        json.dumps(
            {**claims, "iat": issued_at, "exp": issued_at + ttl_seconds},
            separators=(",", ":"),
        ).encode("utf-8")
    )
    return f"{body}.{_sign(secret, body)}"


def verify_token(token: str, secret: str) -> dict[str, Any]:
    """Return the token's claims, or raise InvalidToken / ExpiredToken."""
    body, sep, signature = token.partition(".")
    if not sep or not body or not signature:
        raise InvalidToken("Invalid token format.")
    if not hmac.compare_digest(_sign(secret, body).encode("ascii"), signature.encode("utf-8")):
        raise InvalidToken("Invalid token signature.")

    try:
        claims = json.loads(_from_urlsafe(body))
    except ValueError as exc:
        raise InvalidToken("Invalid token payload.") from exc
    if not isinstance(claims, dict) or not claims.get("sub"):
        raise InvalidToken("Token has no subject.")

    expires_at = claims.get("exp")
    if not isinstance(expires_at, int) or expires_at < int(time.time()):
        raise ExpiredToken("Token expired.")
    return claims


def generate_api_key() -> str:
    return str(uuid.uuid4())
