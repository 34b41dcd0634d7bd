"""
Chat Usage — Pre-flight Balance Gate & Post-flight Credit Deduction
====================================================================

PURPOSE:
    The ledger-facing half of every chat / LLM handler:
    1. **check_balance()** — Pre-flight: a wallet with balance <= 0 may not
       start a billable completion (402, top-up modal).
    2. **record_usage()** — Post-flight: converts provider token usage into
       credits, advances the usage totals and points, and calls
       TokenLedger.spend().

PRICING:
    credits_to_deduct = ceil(raw_tokens * model_multiplier)
    new_total_spent   = prior_total_spent + raw_tokens
    new_points_total  = floor(new_total_spent / settings.points_divisor)

    Points accrue on raw provider tokens, not on multiplied credits, so a
    premium model drains the balance faster without inflating points.

PAYMENT CONVERSION:
    credits = floor(usd * revenue_share / avg_cost_per_1m * 1_000_000)
    Defaults: 60% of each payment becomes credits; $0.285 per 1M tokens
    (GPT-4o-mini blend: 70% input @ $0.15, 30% output @ $0.60).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional

from app.config import settings
from app.services.token_ledger import LedgerResult, TokenLedger

logger = logging.getLogger(__name__)

__all__ = [
    "ChatUsageService",
    "BalanceCheck",
    "UsageCharge",
    "multiplier_for_model",
    "credits_for_usage",
    "estimate_tokens",
    "credits_for_payment",
]

CHARS_PER_TOKEN = 4


# ---------------------------------------------------------------------------
# Pricing helpers
# ---------------------------------------------------------------------------

def multiplier_for_model(
    model: Optional[str],
    multipliers: Optional[Dict[str, float]] = None,
) -> float:
    """Credit multiplier for *model*; unknown or missing models cost 1.0x."""
    table = multipliers if multipliers is not None else settings.model_token_multipliers
    if not model:
        model = settings.default_model
    multiplier = table.get(model, 1.0)
    if multiplier <= 0:
        logger.warning("Non-positive multiplier %s for model %s, using 1.0", multiplier, model)
        return 1.0
    return float(multiplier)


def credits_for_usage(raw_tokens: int, multiplier: float = 1.0) -> int:
    if raw_tokens <= 0:
        return 0
    return math.ceil(raw_tokens * multiplier)


def estimate_tokens(content: Optional[str]) -> int:
    """Rough token count for a reply when the provider omits usage."""
    if not content:
        return 0
    return math.ceil(len(content) / CHARS_PER_TOKEN)


def credits_for_payment(
    usd_amount: float,
    revenue_share: Optional[float] = None,
    avg_cost_per_1m_tokens_usd: Optional[float] = None,
) -> int:
    """Credits bought by a settled payment of *usd_amount* USD."""
    share = settings.payment_revenue_share if revenue_share is None else revenue_share
    cost = (
        settings.payment_avg_cost_per_1m_tokens_usd
        if avg_cost_per_1m_tokens_usd is None
        else avg_cost_per_1m_tokens_usd
    )
    if usd_amount <= 0:
        return 0
    return math.floor(usd_amount * share / cost * 1_000_000)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BalanceCheck:
    """Result of a check_balance() call."""

    allowed: bool
    balance: int
    points: int
    total_tokens_spent: int


@dataclass(frozen=True)
class UsageCharge:
    """Result of a record_usage() call."""

    raw_tokens_used: int
    credits_deducted: int
    multiplier: float
    new_balance: int
    points: int
    total_tokens_spent: int
    source: str

    @property
    def low_balance(self) -> bool:
        return self.new_balance <= 0


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ChatUsageService:
    """Balance gate and usage charging on top of a TokenLedger."""

    def __init__(self, ledger: TokenLedger) -> None:
        self._ledger = ledger

    async def check_balance(self, wallet_address: str) -> BalanceCheck:
        current = await self._ledger.get_balance(wallet_address)
        return BalanceCheck(
            allowed=current.balance > 0,
            balance=current.balance,
            points=current.points,
            total_tokens_spent=current.total_tokens_spent,
        )

    async def record_usage(
        self,
        wallet_address: str,
        raw_tokens_used: int,
        model: Optional[str] = None,
        content: Optional[str] = None,
        prior: Optional[BalanceCheck] = None,
    ) -> UsageCharge:
        """
        Charge a completed chat turn.

        *prior* is the pre-flight read; when omitted the balance is read
        here. The ledger re-reads under its own concurrency guard, so a
        stale prior only affects the fallback-cache estimate.
        """
        raw = raw_tokens_used if raw_tokens_used > 0 else estimate_tokens(content)
        multiplier = multiplier_for_model(model)
        credits = credits_for_usage(raw, multiplier)

        if prior is None:
            prior = await self.check_balance(wallet_address)

        new_total_spent = prior.total_tokens_spent + raw
        new_points = self._ledger.points_for(new_total_spent)
        estimated_balance = max(0, prior.balance - credits)

        result: LedgerResult = await self._ledger.spend(
            wallet_address,
            credits_to_deduct=credits,
            new_points_total=new_points,
            new_total_spent=new_total_spent,
            new_balance=estimated_balance,
        )

        logger.info(
            "Usage charged: wallet=%s raw=%d multiplier=%.2f credits=%d balance=%d source=%s",
            result.wallet_address, raw, multiplier, credits, result.balance, result.source,
        )

        return UsageCharge(
            raw_tokens_used=raw,
            credits_deducted=credits,
            multiplier=multiplier,
            new_balance=result.balance,
            points=result.points,
            total_tokens_spent=result.total_tokens_spent,
            source=result.source,
        )
