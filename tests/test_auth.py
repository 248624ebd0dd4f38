import base64
import hashlib

import pytest

from auth import (
    PASSWORD_ITERATIONS,
    ExpiredToken,
    InvalidToken,
    create_token,
    generate_api_key,
    hash_password,
    verify_password,
    verify_token,
)

SECRET = "unit-test-secret"


def test_password_round_trip():
    stored = hash_password("correct horse")
    assert verify_password("correct horse", stored)
    assert not verify_password("wrong horse", stored)


def test_password_hashes_are_salted():
    assert hash_password("same") != hash_password("same")


def test_account_without_password_never_verifies():
    assert verify_password("anything", None) is False


def test_token_carries_payload():
    payload = verify_token(create_token({"sub": "acct-1"}, SECRET, 60), SECRET)
    assert payload["sub"] == "acct-1"
    assert "exp" in payload


def test_token_with_other_secret_rejected():
    token = create_token({"sub": "acct-1"}, SECRET, 60)
    with pytest.raises(InvalidToken):
        verify_token(token, "another-secret")


def test_tampered_token_rejected():
    _, signature = create_token({"sub": "acct-1"}, SECRET, 60).split(".")
    forged = create_token({"sub": "acct-2"}, SECRET, 60).split(".")[0]
    with pytest.raises(InvalidToken):
        verify_token(f"{forged}.{signature}", SECRET)


def test_expired_token_is_distinguished():
    token = create_token({"sub": "acct-1"}, SECRET, -1)
    with pytest.raises(ExpiredToken):
        verify_token(token, SECRET)


def test_garbage_token_rejected():
    with pytest.raises(InvalidToken):
        verify_token("garbage", SECRET)


def test_api_keys_are_unique():
    keys = {generate_api_key() for _ in range(50)}
    assert len(keys) == 50


def test_password_hash_records_work_factor():
    scheme, iterations, salt, digest = hash_password("correct horse").split("$")
    assert scheme == "pbkdf2_sha256"
    assert int(iterations) == PASSWORD_ITERATIONS
    assert salt and digest


def test_lower_work_factor_hash_still_verifies():
    stored = hash_password("correct horse").split("$")
    salt = base64.urlsafe_b64decode(stored[2] + "=" * (-len(stored[2]) % 4))
    digest = hashlib.pbkdf2_hmac("sha256", b"correct horse", salt, 1_000)
    legacy = "$".join(
        ["pbkdf2_sha256", "1000", stored[2], base64.urlsafe_b64encode(digest).rstrip(b"=").decode()]
    )
    assert verify_password("correct horse", legacy)


@pytest.mark.parametrize("stored", ["not-a-hash", "md5$1$abc$def", "pbkdf2_sha256$many$abc$def"])
def test_unreadable_hash_never_verifies(stored):
    assert verify_password("anything", stored) is False


def test_token_requires_subject():
    with pytest.raises(ValueError):
        create_token({"email": "reader@example.com"}, SECRET, 60)


def test_non_ascii_signature_rejected():
    body = create_token({"sub": "acct-1"}, SECRET, 60).split(".")[0]
    with pytest.raises(InvalidToken):
        verify_token(f"{body}.sïgnature", SECRET)
