"""
Token Balance Router
====================

GET /api/chat/token-balance?wallet=<address> — current credits and points
for the chat UI header.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.core.errors import LedgerServiceError
from app.services.token_ledger import TokenLedger, get_token_ledger

logger = logging.getLogger(__name__)

router = APIRouter()


class TokenBalanceResponse(BaseModel):
    balance: int
    points: int


@router.get(
    "/token-balance",
    response_model=TokenBalanceResponse,
    summary="Get chat token balance",
    description="Current credit balance and points for a wallet. Unknown wallets read as zero.",
)
async def get_token_balance(
    wallet: Optional[str] = Query(None, description="Wallet address"),
    ledger: TokenLedger = Depends(get_token_ledger),
):
    if not wallet or not wallet.strip():
        raise LedgerServiceError("TKL-API-001", detail="wallet query parameter missing")

    result = await ledger.get_balance(wallet)
    return TokenBalanceResponse(**result.to_dict())
