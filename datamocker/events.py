"""
Generation history.

Recording is telemetry: it runs after the response has been decided and any
failure is logged and dropped through ``best_effort``.
"""

import logging
import re
from typing import Callable, List, Optional, TypeVar

from sqlalchemy.orm import Session

from datamocker.models import GenerationEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SQL_TABLE = re.compile(r"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?[\"'`]?(\w+)[\"'`]?", re.IGNORECASE)
_NOSQL_NAME = re.compile(r"[\"']?(collection|type|name)[\"']?\s*:\s*[\"'](\w+)[\"']", re.IGNORECASE)
_NOSQL_ENTITY = re.compile(r"[\"']?(\w+)[\"']?\s*:\s*{")
_GENERIC_KEYS = {"properties", "required", "type", "items"}


def best_effort(label: str, func: Callable[..., T], *args, **kwargs) -> Optional[T]:
    """Call ``func``; on any exception log it under ``label`` and return None."""
    try:
        return func(*args, **kwargs)
    except Exception as e:
        logger.warning(f"{label} failed: {type(e).__name__}: {e}")
        return None


def describe_schema(schema: str, schema_type: str) -> str:
    """Human-readable name for a schema, e.g. "users records"."""
    match = None
    if schema_type == "sql":
        match = _SQL_TABLE.search(schema or "")
        if match:
            return f"{match.group(1)} records"
    else:
        match = _NOSQL_NAME.search(schema or "")
        if match:
            return f"{match.group(2)} records"
        entity = _NOSQL_ENTITY.search(schema or "")
        if entity and entity.group(1).lower() not in _GENERIC_KEYS:
            return f"{entity.group(1)} records"
    return f"{schema_type.upper()} records"


class EventRecorder:
    """Persists generation events for the history endpoint"""

    def __init__(self, db: Session):
        self.db = db

    def record_generation(
        self,
        identifier: str,
        schema: str,
        schema_type: str,
        records_count: int,
        format: str,
        success: bool,
        account_id: Optional[str] = None,
        credential_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> GenerationEvent:
        event = GenerationEvent(
            identifier=identifier,
            account_id=account_id,
            credential_id=credential_id,
            schema_name=describe_schema(schema, schema_type),
            schema_type=schema_type,
            records_count=records_count,
            format=format,
            provider=provider,
            model=model,
            success=success,
            error_message=error_message,
        )
        try:
            self.db.add(event)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return event

    def recent_for_account(self, account_id: str, limit: int = 10) -> List[GenerationEvent]:
        return (
            self.db.query(GenerationEvent)
            .filter(GenerationEvent.account_id == account_id)
            .order_by(GenerationEvent.timestamp.desc(), GenerationEvent.id.desc())
            .limit(limit)
            .all()
        )
