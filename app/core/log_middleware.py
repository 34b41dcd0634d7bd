"""
Request context for ledger logs.

CorrelationMiddleware assigns request / correlation IDs and, when the
request names a wallet in its query string or ``X-Wallet-Address`` header,
binds the normalized wallet so every retry, fallback and settlement line
logged while serving it carries ``wallet``. Routers that read the wallet
from a JSON body call bind_wallet() themselves.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.structured_logging import correlation_id_var, request_id_var, wallet_var
from app.utils.wallets import normalize_wallet

logger = logging.getLogger(__name__)

WALLET_HEADER = "x-wallet-address"


def bind_wallet(wallet: Optional[str]) -> Optional[str]:
    """Set the log-context wallet for the current request. Blank input is ignored."""
    if not wallet or not wallet.strip():
        return None
    normalized = normalize_wallet(wallet)
    wallet_var.set(normalized)
    return normalized


def _request_wallet(request: Request) -> Optional[str]:
    wallet = request.query_params.get("wallet") or request.headers.get(WALLET_HEADER)
    if not wallet or not wallet.strip():
        return None
    return normalize_wallet(wallet)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Bind request_id, correlation_id and wallet for the duration of a request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        corr_id = request.headers.get("x-correlation-id") or uuid.uuid4().hex
        wallet = _request_wallet(request)

        rid_token = request_id_var.set(req_id)
        cid_token = correlation_id_var.set(corr_id)
        wallet_token = wallet_var.set(wallet)

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            status_code = response.status_code if response else None
            log = logger.warning if status_code in (402, 403) else logger.info
            log(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path": request.url.path,
                    "http.status_code": status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            wallet_var.reset(wallet_token)
            correlation_id_var.reset(cid_token)
            request_id_var.reset(rid_token)

        response.headers["x-request-id"] = req_id
        response.headers["x-correlation-id"] = corr_id
        return response
