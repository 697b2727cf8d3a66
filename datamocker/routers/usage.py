import logging

from fastapi import APIRouter, Depends, Request

from datamocker.quota import QuotaLedger
from datamocker.routers.generate import get_quota_ledger
from datamocker.schemas import DailyUsage
from datamocker.utils.security import resolve_identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("/daily", response_model=DailyUsage, response_model_exclude_none=True)
async def daily_usage(request: Request, ledger: QuotaLedger = Depends(get_quota_ledger)):
    """Today's generation usage for the caller (signed-in account or client IP)"""
    identity = resolve_identity(request)
    status = ledger.current(identity.identifier, authenticated=identity.authenticated)
    if status.warning:
        logger.warning(f"Serving best-guess usage for {identity.identifier}")
    return DailyUsage(
        used=status.used,
        limit=int(status.limit),
        remaining=int(status.remaining),
        resetTimestamp=status.reset_at,
        warning=status.warning,
    )
