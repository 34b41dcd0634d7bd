"""
Chat Usage Router
=================

POST /api/chat/usage — charge a completed chat turn against a wallet.

Called by the chat handlers once the provider has answered. Token usage
comes from the provider response; when it is missing the reply text is
used to estimate it.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.core.errors import LedgerServiceError
from app.core.log_middleware import bind_wallet
from app.services.chat_usage import ChatUsageService
from app.services.token_ledger import TokenLedger, get_token_ledger

logger = logging.getLogger(__name__)

router = APIRouter()


class UsageRequest(BaseModel):
    walletAddress: str = Field(..., min_length=1, description="Wallet being charged")
    rawTokensUsed: int = Field(0, ge=0, description="Provider-reported total tokens")
    model: Optional[str] = Field(None, description="Model id used for the completion")
    content: Optional[str] = Field(None, description="Assistant reply, for estimating usage")


class UsageResponse(BaseModel):
    tokensUsed: int
    rawTokensUsed: int
    tokenMultiplier: float
    newBalance: int
    points: int
    lowBalance: Optional[bool] = None


def get_chat_usage_service(
    ledger: TokenLedger = Depends(get_token_ledger),
) -> ChatUsageService:
    return ChatUsageService(ledger)


@router.post(
    "/usage",
    response_model=UsageResponse,
    response_model_exclude_none=True,
    summary="Record chat usage",
    description="Deducts credits for a chat completion and updates points. 402 when the balance is exhausted.",
)
async def record_chat_usage(
    body: UsageRequest,
    service: ChatUsageService = Depends(get_chat_usage_service),
):
    if not body.walletAddress.strip():
        raise LedgerServiceError("TKL-API-006", detail="blank walletAddress in usage request")
    bind_wallet(body.walletAddress)

    check = await service.check_balance(body.walletAddress)
    if not check.allowed:
        raise LedgerServiceError(
            "TKL-LED-001",
            detail=f"balance {check.balance} for {body.walletAddress}",
            wallet=body.walletAddress,
        )

    charge = await service.record_usage(
        body.walletAddress,
        raw_tokens_used=body.rawTokensUsed,
        model=body.model,
        content=body.content,
        prior=check,
    )

    return UsageResponse(
        tokensUsed=charge.credits_deducted,
        rawTokensUsed=charge.raw_tokens_used,
        tokenMultiplier=charge.multiplier,
        newBalance=charge.new_balance,
        points=charge.points,
        lowBalance=True if charge.low_balance else None,
    )
