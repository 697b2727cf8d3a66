import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from datamocker.api_key_manager import CredentialStore
from datamocker.database import get_db
from datamocker.errors import InvalidInput
from datamocker.events import EventRecorder
from datamocker.generator import generate_mock_data
from datamocker.orchestrator import CallerIdentity, GenerationOrchestrator
from datamocker.quota import QuotaLedger
from datamocker.utils.security import get_credential_store, require_api_key, resolve_identity

router = APIRouter(prefix="/api", tags=["generation"])


def get_quota_ledger(request: Request) -> QuotaLedger:
    """Ledger built at startup and held on the application state"""
    return request.app.state.quota_ledger


def get_generator():
    return generate_mock_data


async def _read_body(request: Request):
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError as e:
        raise InvalidInput("Invalid request data", details={"body": ["Request body is not valid JSON"]}) from e


async def _run(
    request: Request,
    identity: CallerIdentity,
    ledger: QuotaLedger,
    generator,
    credentials: CredentialStore,
    db: Session,
) -> JSONResponse:
    body = await _read_body(request)
    orchestrator = GenerationOrchestrator(
        ledger=ledger,
        generate=generator,
        credentials=credentials,
        events=EventRecorder(db),
    )
    result = await orchestrator.run(body, identity)
    return JSONResponse(result.body, status_code=result.status_code)


@router.post("/v1/generate")
async def generate_with_api_key(
    request: Request,
    identity: CallerIdentity = Depends(require_api_key),
    ledger: QuotaLedger = Depends(get_quota_ledger),
    generator=Depends(get_generator),
    credentials: CredentialStore = Depends(get_credential_store),
    db: Session = Depends(get_db),
):
    """Generate mock data for programmatic callers authenticated by API key"""
    return await _run(request, identity, ledger, generator, credentials, db)


@router.post("/generate")
async def generate_interactive(
    request: Request,
    ledger: QuotaLedger = Depends(get_quota_ledger),
    generator=Depends(get_generator),
    credentials: CredentialStore = Depends(get_credential_store),
    db: Session = Depends(get_db),
):
    """Generate mock data for signed-in or anonymous interactive callers"""
    return await _run(request, resolve_identity(request), ledger, generator, credentials, db)
