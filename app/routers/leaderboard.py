"""
Leaderboard Router
==================

GET  /api/chat/leaderboard?limit=&offset= — wallets ranked by chat points.
POST /api/chat/leaderboard                — one wallet's rank.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.core.errors import LedgerServiceError
from app.core.log_middleware import bind_wallet
from app.services.token_ledger import LedgerUnavailableError, TokenLedger, get_token_ledger

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_PAGE_SIZE = 100


class LeaderboardRow(BaseModel):
    rank: int
    wallet_address: str
    points: int
    total_tokens_spent: int
    balance: int


class LeaderboardResponse(BaseModel):
    leaderboard: List[LeaderboardRow]
    total: int
    limit: int
    offset: int


class RankRequest(BaseModel):
    walletAddress: Optional[str] = None


class RankResponse(BaseModel):
    rank: Optional[int]
    points: int
    total_users: int


@router.get(
    "/leaderboard",
    response_model=LeaderboardResponse,
    summary="Points leaderboard",
    description="Wallets ordered by points, then total tokens spent.",
)
async def get_leaderboard(
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    ledger: TokenLedger = Depends(get_token_ledger),
):
    try:
        board = await ledger.leaderboard(limit=limit, offset=offset)
    except LedgerUnavailableError as exc:
        raise LedgerServiceError("TKL-LED-002", detail=str(exc)) from exc

    return LeaderboardResponse(
        leaderboard=[
            LeaderboardRow(
                rank=e.rank,
                wallet_address=e.wallet_address,
                points=e.points,
                total_tokens_spent=e.total_tokens_spent,
                balance=e.balance,
            )
            for e in board.entries
        ],
        total=board.total,
        limit=board.limit,
        offset=board.offset,
    )


@router.post(
    "/leaderboard",
    response_model=RankResponse,
    summary="Wallet rank",
    description="Rank and points for one wallet; rank is null when it has no account.",
)
async def get_wallet_rank(
    body: RankRequest,
    ledger: TokenLedger = Depends(get_token_ledger),
):
    wallet = bind_wallet(body.walletAddress)
    if wallet is None:
        raise LedgerServiceError("TKL-API-006", detail="blank walletAddress in rank request")

    try:
        rank = await ledger.rank_of(wallet)
    except LedgerUnavailableError as exc:
        raise LedgerServiceError("TKL-LED-002", detail=str(exc), wallet=wallet) from exc

    return RankResponse(rank=rank.rank, points=rank.points, total_users=rank.total_users)
