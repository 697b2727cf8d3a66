"""Tests for API key issuing, hashing and validation."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from datamocker.api_key_manager import (
    API_KEY_EXPIRY_DAYS,
    CredentialStore,
    generate_secure_key,
    hash_api_key,
    verify_api_key,
)
from datamocker.errors import InvalidInput, NotFound, Unauthorized
from datamocker.models import ApiKey


def _now():
    return datetime.now(timezone.utc).replace(tzinfo=None)


@pytest.fixture
def store(db_session):
    return CredentialStore(db_session)


@pytest.mark.unit
class TestHashing:
    """Test secret generation and salted hashing."""

    def test_generate_secure_key_is_url_safe(self):
        """Test keys are 43 base64url characters without padding."""
        key = generate_secure_key()
        assert len(key) == 43
        assert "=" not in key
        assert "+" not in key and "/" not in key

    def test_generate_secure_key_is_unique(self):
        """Test consecutive keys differ."""
        assert generate_secure_key() != generate_secure_key()

    def test_hash_format(self):
        """Test stored hash is 'salt:hash' in hex."""
        stored = hash_api_key("secret-value")
        salt, derived = stored.split(":")
        assert len(salt) == 32
        assert len(derived) == 128
        int(salt, 16)
        int(derived, 16)

    def test_same_secret_hashes_differently(self):
        """Test a fresh salt is used each time."""
        assert hash_api_key("secret-value") != hash_api_key("secret-value")

    def test_verify_roundtrip(self):
        """Test verification of the original and a different secret."""
        stored = hash_api_key("secret-value")
        assert verify_api_key("secret-value", stored) is True
        assert verify_api_key("secret-valuf", stored) is False

    def test_verify_malformed_stored_value(self):
        """Test malformed records never verify."""
        assert verify_api_key("secret-value", "no-separator") is False
        assert verify_api_key("secret-value", ":") is False


@pytest.mark.unit
class TestCredentialStore:
    """Test the credential store against an in-memory database."""

    def test_issue_and_validate(self, store):
        """Test an issued secret validates to its account and credential."""
        issued = store.issue("user-1", "ci")

        validated = store.validate(issued.secret)

        assert validated is not None
        assert validated.account_id == "user-1"
        assert validated.credential_id == issued.credential_id

    def test_issue_sets_ninety_day_expiry(self, store):
        """Test expiry is 90 days after issue."""
        before = _now()
        issued = store.issue("user-1", "ci")
        expected = before + timedelta(days=API_KEY_EXPIRY_DAYS)
        assert abs((issued.expires_at - expected).total_seconds()) < 60

    def test_plaintext_secret_not_stored(self, store, db_session):
        """Test only the hash is persisted."""
        issued = store.issue("user-1", "ci")
        record = db_session.get(ApiKey, issued.credential_id)
        assert record.key_hash != issued.secret
        assert issued.secret not in record.key_hash
        assert ":" in record.key_hash

    def test_key_prefix_stays_server_side(self, store, db_session):
        """Test the stored prefix is the secret's first 8 chars and listings never carry it."""
        issued = store.issue("user-1", "ci")
        record = db_session.get(ApiKey, issued.credential_id)
        assert record.key_prefix == issued.secret[:8]

        summary = store.list_keys("user-1")[0]
        assert not hasattr(summary, "key_prefix")
        assert record.key_prefix not in repr(summary)

    @pytest.mark.parametrize("account_id,label", [("", "ci"), ("user-1", ""), ("user-1", "   ")])
    def test_issue_requires_account_and_label(self, store, account_id, label):
        """Test missing account or label is rejected."""
        with pytest.raises(InvalidInput):
            store.issue(account_id, label)

    def test_validate_rejects_unknown_and_empty(self, store):
        """Test unknown or empty secrets yield None."""
        store.issue("user-1", "ci")
        assert store.validate("") is None
        assert store.validate(None) is None
        assert store.validate(generate_secure_key()) is None

    def test_validate_rejects_expired(self, store, db_session):
        """Test an expired credential no longer validates."""
        issued = store.issue("user-1", "ci")
        record = db_session.get(ApiKey, issued.credential_id)
        record.expires_at = _now() - timedelta(seconds=1)
        db_session.commit()

        assert store.validate(issued.secret) is None

    def test_list_keys_newest_first_and_unexpired(self, store, db_session):
        """Test listing excludes expired keys and orders newest first."""
        first = store.issue("user-1", "first")
        second = store.issue("user-1", "second")
        expired = store.issue("user-1", "old")
        store.issue("user-2", "other")

        db_session.get(ApiKey, first.credential_id).created_at = _now() - timedelta(days=2)
        db_session.get(ApiKey, expired.credential_id).expires_at = _now() - timedelta(days=1)
        db_session.commit()

        keys = store.list_keys("user-1")

        assert [k.id for k in keys] == [second.credential_id, first.credential_id]
        assert keys[0].label == "second"
        assert keys[0].usage_count == 0
        assert keys[0].last_used_at is None

    def test_revoke(self, store):
        """Test a revoked key no longer validates or lists."""
        issued = store.issue("user-1", "ci")

        store.revoke("user-1", issued.credential_id)

        assert store.validate(issued.secret) is None
        assert store.list_keys("user-1") == []

    def test_revoke_unknown_key(self, store):
        """Test revoking a missing key raises NotFound."""
        with pytest.raises(NotFound):
            store.revoke("user-1", "does-not-exist")

    def test_revoke_other_accounts_key(self, store):
        """Test revoking someone else's key raises Unauthorized and keeps it."""
        issued = store.issue("user-1", "ci")

        with pytest.raises(Unauthorized):
            store.revoke("user-2", issued.credential_id)

        assert store.validate(issued.secret) is not None

    def test_record_usage(self, store):
        """Test usage count and last-used time are updated."""
        issued = store.issue("user-1", "ci")

        store.record_usage(issued.credential_id)
        store.record_usage(issued.credential_id)

        summary = store.list_keys("user-1")[0]
        assert summary.usage_count == 2
        assert summary.last_used_at is not None

    def test_record_usage_swallows_failures(self):
        """Test a failing usage update never raises."""
        db = MagicMock()
        db.execute.side_effect = OperationalError("UPDATE", {}, Exception("database is locked"))

        CredentialStore(db).record_usage("some-id")

        db.rollback.assert_called_once()

    def test_purge_expired(self, store, db_session):
        """Test purge removes only expired keys."""
        keep = store.issue("user-1", "keep")
        drop = store.issue("user-1", "drop")
        db_session.get(ApiKey, drop.credential_id).expires_at = _now() - timedelta(days=1)
        db_session.commit()

        assert store.purge_expired() == 1
        assert db_session.get(ApiKey, drop.credential_id) is None
        assert db_session.get(ApiKey, keep.credential_id) is not None
