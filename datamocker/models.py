import uuid

from sqlalchemy import Column, String, Integer, DateTime, Boolean, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class ApiKey(Base):
    """Issued API credential. Only the salted hash of the secret is stored."""
    __tablename__ = "api_keys"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, index=True, nullable=False)
    key_prefix = Column(String(16), index=True, nullable=False)  # first 8 chars of the secret; secret material, never exposed
    key_hash = Column(String, nullable=False)  # "salt:hash"
    label = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, index=True, nullable=False)
    last_used_at = Column(DateTime, nullable=True)
    usage_count = Column(Integer, default=0, nullable=False)


class QuotaCounter(Base):
    """Opaque-key counter used by the daily quota ledger"""
    __tablename__ = "quota_counters"

    key = Column(String, primary_key=True)
    count = Column(Integer, default=0, nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)


class GenerationEvent(Base):
    """Model for storing generation history"""
    __tablename__ = "generation_events"

    id = Column(Integer, primary_key=True, index=True)
    identifier = Column(String, index=True)  # account id or client IP
    account_id = Column(String, index=True, nullable=True)
    credential_id = Column(String, nullable=True)
    schema_name = Column(String)
    schema_type = Column(String)  # sql, nosql
    records_count = Column(Integer)
    format = Column(String)
    provider = Column(String, nullable=True)
    model = Column(String, nullable=True)
    success = Column(Boolean, default=True)
    error_message = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=func.now())
