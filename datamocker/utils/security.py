from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from datamocker.api_key_manager import CredentialStore
from datamocker.database import get_db
from datamocker.errors import InvalidCredential
from datamocker.orchestrator import CallerIdentity

# Bearer scheme; auto_error off so a missing header gets our own 401 body
bearer_scheme = HTTPBearer(auto_error=False)

# Header set by the upstream session gateway for signed-in interactive users
ACCOUNT_HEADER = "X-User-Id"


def get_credential_store(db: Session = Depends(get_db)) -> CredentialStore:
    return CredentialStore(db)


def require_api_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    store: CredentialStore = Depends(get_credential_store),
) -> CallerIdentity:
    """Dependency to verify a bearer API key and return the caller identity"""
    # Plain def: FastAPI runs it in the threadpool, keeping PBKDF2 off the event loop
    if credentials is None or not credentials.credentials:
        raise InvalidCredential()

    validated = store.validate(credentials.credentials.strip())
    if validated is None:
        raise InvalidCredential()

    return CallerIdentity(
        identifier=validated.account_id,
        authenticated=True,
        account_id=validated.account_id,
        credential_id=validated.credential_id,
    )


def client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def resolve_identity(request: Request) -> CallerIdentity:
    """Signed-in account from the session gateway, otherwise the client IP"""
    account_id = request.headers.get(ACCOUNT_HEADER, "").strip()
    if account_id:
        return CallerIdentity(identifier=account_id, authenticated=True, account_id=account_id)
    return CallerIdentity(identifier=client_address(request), authenticated=False)


def require_account(request: Request) -> str:
    """Dependency returning the signed-in account id"""
    account_id = request.headers.get(ACCOUNT_HEADER, "").strip()
    if not account_id:
        raise InvalidCredential("Sign-in required")
    return account_id
