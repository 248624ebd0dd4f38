from datetime import datetime, timedelta, timezone

import pytest

import gate
from auth import create_token
from config import auth_secret
from gate import AccessRejected, ClientInfo


def _token(account_id, ttl=3600):
    return create_token({"sub": account_id}, auth_secret(), ttl)


class TestResolveAccount:
    def test_bearer_token(self, memory_db):
        memory_db.add_account(id="acct-1")
        account = gate.resolve_account(f"Bearer {_token('acct-1')}", None)
        assert account["id"] == "acct-1"

    def test_api_key(self, memory_db):
        memory_db.add_account(id="acct-1", api_key="key-abc")
        assert gate.resolve_account(None, "key-abc")["id"] == "acct-1"

    def test_bearer_wins_over_api_key(self, memory_db):
        memory_db.add_account(id="acct-1", api_key="key-1")
        memory_db.add_account(id="acct-2", api_key="key-2")
        account = gate.resolve_account(f"Bearer {_token('acct-1')}", "key-2")
        assert account["id"] == "acct-1"

    def test_invalid_bearer_does_not_fall_back_to_key(self, memory_db):
        memory_db.add_account(id="acct-1", api_key="key-1")
        with pytest.raises(AccessRejected) as excinfo:
            gate.resolve_account("Bearer not-a-token", "key-1")
        assert excinfo.value.reason == gate.INVALID_TOKEN

    def test_expired_bearer(self, memory_db):
        memory_db.add_account(id="acct-1")
        with pytest.raises(AccessRejected) as excinfo:
            gate.resolve_account(f"Bearer {_token('acct-1', ttl=-10)}", None)
        assert excinfo.value.reason == gate.EXPIRED_TOKEN

    def test_token_for_deleted_account(self, memory_db):
        with pytest.raises(AccessRejected) as excinfo:
            gate.resolve_account(f"Bearer {_token('gone')}", None)
        assert excinfo.value.reason == gate.NOT_AUTHENTICATED

    def test_unknown_api_key(self, memory_db):
        with pytest.raises(AccessRejected) as excinfo:
            gate.resolve_account(None, "nope")
        assert excinfo.value.reason == gate.INVALID_KEY

    @pytest.mark.parametrize("authorization,api_key", [(None, None), ("", "  "), ("Basic abc", None), ("Bearer ", None)])
    def test_missing_credential(self, memory_db, authorization, api_key):
        with pytest.raises(AccessRejected) as excinfo:
            gate.resolve_account(authorization, api_key)
        assert excinfo.value.reason == gate.NOT_AUTHENTICATED
        assert "log in" in excinfo.value.message


class TestAdmit:
    def test_admits_account_with_quota(self, memory_db):
        memory_db.add_account(id="acct-1", api_key="key-1", requests_remaining=2)
        admitted = gate.admit(None, "key-1", endpoint="/api/summary/generate")
        assert admitted.account_id == "acct-1"
        assert admitted.endpoint == "/api/summary/generate"

    def test_rejects_exhausted_quota(self, memory_db):
        memory_db.add_account(id="acct-1", api_key="key-1", requests_remaining=0)
        with pytest.raises(AccessRejected) as excinfo:
            gate.admit(None, "key-1", endpoint="/api/summary/generate")
        assert excinfo.value.reason == "QUOTA_EXCEEDED"
        assert memory_db.usage_records == []

    def test_rejects_expired_subscription(self, memory_db):
        memory_db.add_account(
            id="acct-1",
            api_key="key-1",
            tier="PREMIUM",
            requests_remaining=100,
            subscription_expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        with pytest.raises(AccessRejected) as excinfo:
            gate.admit(None, "key-1", endpoint="/api/summary/generate")
        assert excinfo.value.reason == "SUBSCRIPTION_EXPIRED"


class TestAdmittedRequest:
    def test_success_debits_and_records_usage(self, memory_db):
        memory_db.add_account(id="acct-1", api_key="key-1", requests_remaining=2)
        client = ClientInfo(user_agent="pytest", ip_address="10.0.0.1")
        admitted = gate.admit(None, "key-1", endpoint="/api/summary/generate", client=client)

        assert admitted.complete(200) is True

        assert memory_db.accounts["acct-1"]["requests_remaining"] == 1
        [record] = memory_db.usage_records
        assert record["account_id"] == "acct-1"
        assert record["endpoint"] == "/api/summary/generate"
        assert record["status"] == 200
        assert record["user_agent"] == "pytest"
        assert record["ip_address"] == "10.0.0.1"
        assert record["latency_ms"] >= 0

    def test_failure_records_usage_without_debit(self, memory_db):
        memory_db.add_account(id="acct-1", api_key="key-1", requests_remaining=2)
        admitted = gate.admit(None, "key-1", endpoint="/api/summary/generate")
        admitted.complete(502)
        assert memory_db.accounts["acct-1"]["requests_remaining"] == 2
        assert memory_db.usage_records[0]["status"] == 502

    def test_complete_runs_once(self, memory_db):
        memory_db.add_account(id="acct-1", api_key="key-1", requests_remaining=5)
        admitted = gate.admit(None, "key-1", endpoint="/api/summary/generate")
        assert admitted.complete(200) is True
        assert admitted.complete(200) is False
        assert memory_db.accounts["acct-1"]["requests_remaining"] == 4
        assert len(memory_db.usage_records) == 1

    def test_usage_failure_is_logged_not_raised(self, memory_db, monkeypatch, caplog):
        import db

        memory_db.add_account(id="acct-1", api_key="key-1", requests_remaining=5)

        def broken(**record):
            raise RuntimeError("usage table unavailable")

        monkeypatch.setattr(db, "insert_usage_record", broken)
        admitted = gate.admit(None, "key-1", endpoint="/api/summary/generate")

        assert admitted.complete(200) is True
        assert memory_db.accounts["acct-1"]["requests_remaining"] == 4
        assert "Error logging usage record" in caplog.text
