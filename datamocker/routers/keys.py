from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from datamocker.api_key_manager import CredentialStore
from datamocker.database import get_db
from datamocker.events import EventRecorder
from datamocker.schemas import ApiKeyCreate, ApiKeyCreated, ApiKeyInfo, ApiKeyList, GenerationEventInfo
from datamocker.utils.security import get_credential_store, require_account

router = APIRouter(prefix="/api/user", tags=["account"])


def _iso(value: Optional[datetime]) -> Optional[str]:
    # Stored naive in UTC
    return value.replace(tzinfo=timezone.utc).isoformat() if value else None


@router.post("/api-keys", response_model=ApiKeyCreated)
def create_api_key(
    key_request: ApiKeyCreate,
    account_id: str = Depends(require_account),
    store: CredentialStore = Depends(get_credential_store),
):
    """Issue a new API key. The secret is returned only in this response."""
    issued = store.issue(account_id, key_request.name)
    return ApiKeyCreated(
        apiKey=issued.secret,
        keyId=issued.credential_id,
        name=issued.label,
        expiresAt=_iso(issued.expires_at),
    )


@router.get("/api-keys", response_model=ApiKeyList)
def list_api_keys(
    account_id: str = Depends(require_account),
    store: CredentialStore = Depends(get_credential_store),
):
    """List the caller's unexpired API keys, newest first"""
    return ApiKeyList(
        keys=[
            ApiKeyInfo(
                id=key.id,
                name=key.label,
                createdAt=_iso(key.created_at),
                expiresAt=_iso(key.expires_at),
                lastUsed=_iso(key.last_used_at),
                usageCount=key.usage_count,
            )
            for key in store.list_keys(account_id)
        ]
    )


@router.delete("/api-keys/{key_id}")
def revoke_api_key(
    key_id: str,
    account_id: str = Depends(require_account),
    store: CredentialStore = Depends(get_credential_store),
):
    """Revoke one of the caller's API keys"""
    store.revoke(account_id, key_id)
    return {"success": True, "message": "API key revoked successfully"}


@router.get("/events", response_model=list[GenerationEventInfo])
def list_generation_events(
    limit: int = Query(10, ge=1, le=100),
    account_id: str = Depends(require_account),
    db: Session = Depends(get_db),
):
    """Recent generation history for the signed-in account"""
    events = EventRecorder(db).recent_for_account(account_id, limit=limit)
    return [
        GenerationEventInfo(
            id=event.id,
            schemaName=event.schema_name,
            schemaType=event.schema_type,
            recordsCount=event.records_count,
            format=event.format,
            provider=event.provider,
            model=event.model,
            success=bool(event.success),
            errorMessage=event.error_message,
            timestamp=_iso(event.timestamp),
        )
        for event in events
    ]
