import base64
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from cryptography.hazmat.primitives import constant_time, hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from datamocker.errors import InvalidInput, NotFound, StorageUnavailable, Unauthorized
from datamocker.models import ApiKey

logger = logging.getLogger(__name__)

API_KEY_BYTES = 32  # 256 bits
PBKDF2_ITERATIONS = 100_000
PBKDF2_KEYLEN = 64  # 512 bits
SALT_BYTES = 16
API_KEY_EXPIRY_DAYS = 90
KEY_PREFIX_LENGTH = 8

# Verified against when no candidate credential exists so misses cost a full derivation
_DUMMY_HASH = f"{'0' * SALT_BYTES * 2}:{'0' * PBKDF2_KEYLEN * 2}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_secure_key() -> str:
    """Generate a cryptographically secure, URL-safe API key"""
    raw = secrets.token_bytes(API_KEY_BYTES)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _derive(secret: str, salt: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=PBKDF2_KEYLEN,
        salt=salt.encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def hash_api_key(secret: str) -> str:
    """Hash an API key with a fresh random salt, returned as ``salt:hash``"""
    salt = secrets.token_hex(SALT_BYTES)
    return f"{salt}:{_derive(secret, salt).hex()}"


def verify_api_key(secret: str, stored: str) -> bool:
    """
    Check a secret against a ``salt:hash`` string in constant time.

    The derivation always runs, even when the stored value is malformed, so
    a broken record is indistinguishable from a wrong secret by timing.
    """
    salt, sep, stored_hash = stored.partition(":")
    well_formed = bool(sep and salt and stored_hash)
    computed = _derive(secret, salt if well_formed else "0" * SALT_BYTES * 2).hex()
    matches = constant_time.bytes_eq(computed.encode("ascii"), stored_hash.encode("ascii"))
    return well_formed and matches


@dataclass
class IssuedCredential:
    secret: str  # returned exactly once
    credential_id: str
    label: str
    expires_at: datetime


@dataclass
class CredentialSummary:
    id: str
    label: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime]
    usage_count: int


@dataclass
class ValidatedCredential:
    account_id: str
    credential_id: str


class CredentialStore:
    """Issue, list, revoke and validate long-lived API credentials"""

    def __init__(self, db: Session):
        self.db = db

    def issue(self, account_id: str, label: str) -> IssuedCredential:
        """Create a credential for an account. The plaintext secret is only in the return value."""
        label = (label or "").strip()
        if not account_id or not label:
            raise InvalidInput("Account ID and key name are required")

        secret = generate_secure_key()
        now = _utcnow()
        record = ApiKey(
            account_id=account_id,
            key_prefix=secret[:KEY_PREFIX_LENGTH],
            key_hash=hash_api_key(secret),
            label=label,
            created_at=now,
            expires_at=now + timedelta(days=API_KEY_EXPIRY_DAYS),
            usage_count=0,
        )
        try:
            self.db.add(record)
            self.db.commit()
            self.db.refresh(record)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store API key for account {account_id}: {e}")
            raise StorageUnavailable("Failed to create API key") from e

        logger.info(f"Issued API key {record.id} for account {account_id}")
        return IssuedCredential(
            secret=secret,
            credential_id=record.id,
            label=record.label,
            expires_at=record.expires_at,
        )

    def list_keys(self, account_id: str) -> List[CredentialSummary]:
        """Unexpired credentials of an account, newest first"""
        if not account_id:
            raise InvalidInput("Account ID is required")
        try:
            records = (
                self.db.query(ApiKey)
                .filter(ApiKey.account_id == account_id, ApiKey.expires_at > _utcnow())
                .order_by(ApiKey.created_at.desc())
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to list API keys for account {account_id}: {e}")
            raise StorageUnavailable("Failed to list API keys") from e

        return [
            CredentialSummary(
                id=r.id,
                label=r.label,
                created_at=r.created_at,
                expires_at=r.expires_at,
                last_used_at=r.last_used_at,
                usage_count=r.usage_count,
            )
            for r in records
        ]

    def revoke(self, account_id: str, credential_id: str) -> None:
        if not account_id or not credential_id:
            raise InvalidInput("Account ID and key ID are required")

        record = self.db.get(ApiKey, credential_id)
        if record is None:
            raise NotFound("API key not found")
        if record.account_id != account_id:
            raise Unauthorized("Unauthorized to revoke this API key")

        try:
            self.db.delete(record)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to revoke API key {credential_id}: {e}")
            raise StorageUnavailable("Failed to revoke API key") from e
        logger.info(f"Revoked API key {credential_id} for account {account_id}")

    def validate(self, secret: Optional[str]) -> Optional[ValidatedCredential]:
        """
        Resolve a presented secret to its credential.

        Returns None for empty, unknown or expired secrets, and when the store
        cannot be read. Usage is not recorded here; see ``record_usage``.
        """
        if not secret:
            return None

        try:
            candidates = (
                self.db.query(ApiKey)
                .filter(ApiKey.key_prefix == secret[:KEY_PREFIX_LENGTH])
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"API key lookup failed: {e}")
            return None

        if not candidates:
            verify_api_key(secret, _DUMMY_HASH)
            return None

        now = _utcnow()
        for record in candidates:
            if not verify_api_key(secret, record.key_hash):
                continue
            if record.expires_at <= now:
                logger.info(f"Rejected expired API key {record.id}")
                return None
            return ValidatedCredential(account_id=record.account_id, credential_id=record.id)
        return None

    def record_usage(self, credential_id: str) -> None:
        """Bump usage counters. Failures are logged and never raised."""
        try:
            self.db.execute(
                update(ApiKey)
                .where(ApiKey.id == credential_id)
                .values(usage_count=ApiKey.usage_count + 1, last_used_at=_utcnow())
            )
            self.db.commit()
        except Exception as e:
            logger.warning(f"Failed to update usage for API key {credential_id}: {e}")
            try:
                self.db.rollback()
            except SQLAlchemyError:
                logger.debug("Rollback after usage update failure also failed")

    def purge_expired(self) -> int:
        """Delete credentials whose expiry has passed. Returns the number removed."""
        try:
            removed = (
                self.db.query(ApiKey)
                .filter(ApiKey.expires_at <= _utcnow())
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to purge expired API keys: {e}")
            raise StorageUnavailable("Failed to purge expired API keys") from e
        logger.info(f"Purged {removed} expired API keys")
        return removed
