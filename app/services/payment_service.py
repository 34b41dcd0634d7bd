"""
Payment Service — x402 requirements, payload decoding, facilitator settlement
==============================================================================

PURPOSE:
    Everything the payment endpoint needs before it may call
    TokenLedger.top_up():
    1. **payment_requirements()** — the x402 "exact" scheme entry advertised
       in the 402 discovery response. Settlement must echo the same object.
    2. **decode_payment_header()** — X-PAYMENT is JSON, or base64 JSON when
       the client library encodes it (starts with "eyJ").
    3. **FacilitatorClient.settle()** — POST {facilitator_url}/settle. This
       is the call that actually moves USDC.

NO RETRIES:
    A settle call that timed out may still have transferred funds. It is
    reported as failed and never replayed from here.

CONFIGURATION (TOKENLEDGER_ prefix):
    PAYMENT_NETWORK, PAYMENT_RECIPIENT, PAYMENT_ASSET, PAYMENT_RESOURCE_URL,
    PAYMENT_MAX_TIMEOUT_S, FACILITATOR_URL, FACILITATOR_API_KEY,
    FACILITATOR_TIMEOUT_S
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

__all__ = [
    "PAYMENT_OPTIONS",
    "X402_VERSION",
    "InvalidPaymentHeader",
    "Settlement",
    "FacilitatorClient",
    "resolve_amount",
    "payment_requirements",
    "discovery_body",
    "decode_payment_header",
    "payer_from_payload",
]

X402_VERSION = 1

# USD amount -> USDC atomic units (6 decimals)
PAYMENT_OPTIONS: Dict[float, str] = {
    0.5: "500000",
    1.0: "1000000",
    1.5: "1500000",
    2.0: "2000000",
}

REASON_API_KEYS_MISSING = "api_keys_missing"
REASON_FACILITATOR_ERROR = "facilitator_error"
REASON_EXCEPTION = "exception"


class InvalidPaymentHeader(ValueError):
    """X-PAYMENT could not be decoded into a JSON object."""


@dataclass(frozen=True)
class Settlement:
    """Result of a facilitator settle call."""

    success: bool
    payer: Optional[str] = None
    transaction: Optional[str] = None
    network: Optional[str] = None
    error_reason: Optional[str] = None
    status_code: int = 0


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------

def resolve_amount(raw: Any) -> Optional[float]:
    """Map a requested USD amount onto an advertised option, or None."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(str(raw).strip())
    except ValueError:
        return None
    return value if value in PAYMENT_OPTIONS else None


def _format_usdc(atomic_amount: str) -> str:
    return f"{int(atomic_amount) / 1_000_000:g}"


def payment_requirements(atomic_amount: str) -> Dict[str, Any]:
    return {
        "scheme": "exact",
        "network": settings.payment_network,
        "maxAmountRequired": atomic_amount,
        "resource": settings.payment_resource_url,
        "description": f"Chat tokens payment - {_format_usdc(atomic_amount)} USDC",
        "mimeType": "application/json",
        "payTo": settings.payment_recipient,
        "maxTimeoutSeconds": settings.payment_max_timeout_s,
        "asset": settings.payment_asset,
        "extra": {"name": "USD Coin", "version": "2"},
    }


def discovery_body(amount: Optional[float] = None) -> Dict[str, Any]:
    """402 body: the requested option only, or every option."""
    if amount is not None and amount in PAYMENT_OPTIONS:
        accepts: List[Dict[str, Any]] = [payment_requirements(PAYMENT_OPTIONS[amount])]
    else:
        accepts = [payment_requirements(atomic) for atomic in PAYMENT_OPTIONS.values()]
    return {"x402Version": X402_VERSION, "accepts": accepts}


# ---------------------------------------------------------------------------
# X-PAYMENT payload
# ---------------------------------------------------------------------------

def decode_payment_header(header: str) -> Dict[str, Any]:
    text = header.strip()
    try:
        if text.startswith("eyJ"):
            padded = text + "=" * (-len(text) % 4)
            text = base64.b64decode(padded).decode("utf-8")
        payload = json.loads(text)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidPaymentHeader(str(exc)) from exc

    if not isinstance(payload, dict):
        raise InvalidPaymentHeader("payment payload must be a JSON object")
    return payload


def payer_from_payload(payload: Dict[str, Any]) -> Optional[str]:
    """authorization.from of an EIP-3009 "exact" payload, if present."""
    inner = payload.get("payload")
    if not isinstance(inner, dict):
        return None
    authorization = inner.get("authorization")
    if not isinstance(authorization, dict):
        return None
    payer = authorization.get("from")
    return payer if isinstance(payer, str) and payer else None


# ---------------------------------------------------------------------------
# Facilitator
# ---------------------------------------------------------------------------

class FacilitatorClient:
    """Async client for the x402 facilitator settle endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = (base_url or settings.facilitator_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.facilitator_api_key
        self._timeout = timeout if timeout is not None else settings.facilitator_timeout_s
        self._transport = transport

    async def settle(
        self,
        payment_payload: Dict[str, Any],
        requirements: Dict[str, Any],
    ) -> Settlement:
        """POST /settle. Never raises; failures come back as Settlement(success=False)."""
        if not self._api_key:
            logger.error("Facilitator API key not configured; cannot settle payment")
            return Settlement(success=False, error_reason=REASON_API_KEYS_MISSING)

        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": payment_payload,
            "paymentRequirements": requirements,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(f"{self._base_url}/settle", json=body, headers=headers)

            if resp.status_code < 200 or resp.status_code >= 300:
                logger.error(
                    "Facilitator settle failed: status=%d body=%s",
                    resp.status_code, resp.text[:500],
                )
                return Settlement(
                    success=False,
                    error_reason=REASON_FACILITATOR_ERROR,
                    status_code=resp.status_code,
                )

            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Facilitator settle error: %s: %s", type(exc).__name__, exc)
            return Settlement(success=False, error_reason=REASON_EXCEPTION)

        if not isinstance(data, dict):
            logger.error("Facilitator settle returned non-object body")
            return Settlement(success=False, error_reason=REASON_EXCEPTION, status_code=resp.status_code)

        if data.get("success") is False:
            reason = data.get("errorReason") or REASON_FACILITATOR_ERROR
            logger.error("Facilitator declined settlement: %s", reason)
            return Settlement(success=False, error_reason=reason, status_code=resp.status_code)

        logger.info(
            "Payment settled: payer=%s transaction=%s",
            data.get("payer"), data.get("transaction"),
        )
        return Settlement(
            success=True,
            payer=data.get("payer"),
            transaction=data.get("transaction"),
            network=data.get("network"),
            status_code=resp.status_code,
        )
