"""
Chat Payment Router (x402)
==========================

GET  /api/chat/payment[?amount=]  — 402 discovery: advertised payment options
POST /api/chat/payment[?amount=]  — without X-PAYMENT: same discovery
                                    with X-PAYMENT: settle, then top up credits

Flow (x402 client):
    1. POST without X-PAYMENT -> 402 {x402Version, accepts[]}
    2. Client signs an EIP-3009 authorization for one entry
    3. POST again with X-PAYMENT -> facilitator settle -> TokenLedger.top_up()

Credits are only added after the facilitator reports success. A top-up that
cannot be persisted lands in the fallback cache; the payer is never told the
payment failed once USDC has moved.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import settings
from app.core.async_utils import run_sync
from app.core.errors import LedgerServiceError
from app.core.log_middleware import bind_wallet
from app.services.chat_usage import credits_for_payment
from app.services.mint_registry import MintRegistry
from app.services.payment_service import (
    PAYMENT_OPTIONS,
    FacilitatorClient,
    InvalidPaymentHeader,
    decode_payment_header,
    discovery_body,
    payer_from_payload,
    payment_requirements,
    resolve_amount,
)
from app.services.token_ledger import TokenLedger, get_token_ledger
from app.utils.wallets import is_evm_address

logger = logging.getLogger(__name__)

router = APIRouter()

PAYMENT_HEADER = "X-PAYMENT"


class PaymentResponse(BaseModel):
    success: bool
    tokensAdded: int
    newBalance: int
    paymentAmount: str
    walletAddress: str
    transaction: Optional[str] = None


def get_facilitator_client() -> FacilitatorClient:
    return FacilitatorClient()


def get_mint_registry() -> Optional[MintRegistry]:
    if settings.mock_mode or not settings.payment_require_mint:
        return None
    return MintRegistry()


def _payment_required(amount: Optional[float]) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content=discovery_body(amount),
        headers={"X-Payment-Required": "true"},
    )


async def _read_json_body(request: Request) -> Dict[str, Any]:
    """JSON body if there is one; x402 clients often POST with no body."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError:
        logger.debug("Payment request body is not JSON; ignoring")
        return {}
    return body if isinstance(body, dict) else {}


async def _require_minted(wallet: str, registry: Optional[MintRegistry]) -> None:
    if registry is None or not is_evm_address(wallet):
        return
    try:
        minted = await run_sync(registry.has_minted, wallet, timeout=settings.mint_check_timeout_s)
    except Exception as exc:
        logger.warning("Mint check before payment failed for %s: %s", wallet, exc)
        return
    if not minted:
        raise LedgerServiceError(
            "TKL-PAY-002",
            detail=f"{wallet} has no mint on record",
            wallet=wallet,
        )


@router.get(
    "/payment",
    summary="Discover payment options",
    description="Always 402 with x402 payment requirements (one option when `amount` matches, all otherwise).",
    status_code=402,
)
async def get_payment_options(amount: Optional[str] = None):
    return _payment_required(resolve_amount(amount))


@router.post(
    "/payment",
    response_model=PaymentResponse,
    summary="Pay for chat tokens",
    description="Settles an x402 payment from the X-PAYMENT header and credits the payer's balance.",
)
async def process_payment(
    request: Request,
    amount: Optional[str] = None,
    ledger: TokenLedger = Depends(get_token_ledger),
    facilitator: FacilitatorClient = Depends(get_facilitator_client),
    mint_registry: Optional[MintRegistry] = Depends(get_mint_registry),
):
    body = await _read_json_body(request)
    requested = amount if amount else body.get("amount")
    payment_header = request.headers.get(PAYMENT_HEADER)

    if not payment_header:
        wallet = body.get("walletAddress")
        if isinstance(wallet, str) and wallet.strip():
            wallet = bind_wallet(wallet)
            await _require_minted(wallet, mint_registry)
        return _payment_required(resolve_amount(requested))

    try:
        payment_payload = decode_payment_header(payment_header)
    except InvalidPaymentHeader as exc:
        raise LedgerServiceError("TKL-API-002", detail=str(exc)) from exc

    logger.info(
        "Payment payload received: x402Version=%s scheme=%s network=%s",
        payment_payload.get("x402Version"),
        payment_payload.get("scheme"),
        payment_payload.get("network"),
    )

    if requested is None or str(requested).strip() == "":
        raise LedgerServiceError("TKL-API-003")

    usd_amount = resolve_amount(requested)
    if usd_amount is None:
        raise LedgerServiceError("TKL-API-004", detail=f"amount={requested!r}")

    requirements = payment_requirements(PAYMENT_OPTIONS[usd_amount])
    settlement = await facilitator.settle(payment_payload, requirements)

    if not settlement.success:
        raise LedgerServiceError(
            "TKL-PAY-001",
            detail=f"settlement failed: {settlement.error_reason}",
            reason=settlement.error_reason,
        )

    payer = settlement.payer or payer_from_payload(payment_payload)
    if not payer:
        # Funds have moved; this needs manual reconciliation.
        logger.error(
            "Settled payment has no payer: transaction=%s amount=%s",
            settlement.transaction, requested,
        )
        raise LedgerServiceError(
            "TKL-API-005",
            context={"transaction": settlement.transaction},
        )

    bind_wallet(payer)
    tokens = credits_for_payment(usd_amount)
    new_balance = await ledger.top_up(payer, tokens)

    logger.info(
        "Chat tokens purchased: wallet=%s usd=%s tokens=%d balance=%d transaction=%s",
        payer, requested, tokens, new_balance, settlement.transaction,
    )

    return PaymentResponse(
        success=True,
        tokensAdded=tokens,
        newBalance=new_balance,
        paymentAmount=str(requested),
        walletAddress=payer,
        transaction=settlement.transaction,
    )
