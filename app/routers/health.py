"""
Health check endpoint.

- GET /api/health — cheap: process alive, version, uptime, ledger mode
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from app.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s
from app.services.token_ledger import TokenLedger, get_token_ledger

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(ledger: TokenLedger = Depends(get_token_ledger)):
    """Cheap health check — no store round-trip."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "ledger_mode": ledger.mode,
    }
