"""
Ledger error codes.

Every client-facing failure is a LedgerServiceError carrying a
``TKL-<DOMAIN>-NNN`` code from registry.yaml. The exception handler in
``middleware`` turns it into the ``{"error": {...}}`` envelope the chat UI
reads (402s open the top-up modal, settlement failures show the reason).

Usage:
    from app.core.errors import LedgerServiceError
    raise LedgerServiceError(
        "TKL-PAY-001", detail="facilitator returned 500",
        wallet=payer, reason="facilitator_error",
    )
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^TKL-[A-Z]{2,6}-\d{3}$")


class LedgerServiceError(Exception):
    """Structured error tied to a registry code.

    Args:
        code: Registry error code, e.g. "TKL-LED-001".
        detail: Internal-only message; logged, never sent to the client.
        context: Extra key-value context for the error log entry.
        wallet: Wallet the request was about; logged as ``error.ctx.wallet``.
        reason: Machine-readable failure reason. Sent to the client only
            when the registry entry is tagged ``expose_reason``.
    """

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: dict | None = None,
        *,
        wallet: str | None = None,
        reason: str | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = dict(context or {})
        if wallet is not None:
            self.context["wallet"] = wallet
        if reason is not None:
            self.context["reason"] = reason
        super().__init__(f"{code}: {detail}" if detail else code)

    @property
    def domain(self) -> str:
        return self.code.split("-")[1]

    @property
    def wallet(self) -> str | None:
        return self.context.get("wallet")

    @property
    def reason(self) -> str | None:
        return self.context.get("reason")
