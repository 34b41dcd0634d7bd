"""
FastAPI exception handler for LedgerServiceError.

Catches LedgerServiceError, looks up the registry, and returns a structured
JSON error response. Unknown codes get a safe fallback.

Registry tags shape the body:
  payment_required  adds "paymentRequired": true (clients open the top-up modal)
  expose_reason     copies the error's reason into the body
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.errors import LedgerServiceError
from app.core.errors.registry import error_registry

logger = logging.getLogger(__name__)


async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    """Convert LedgerServiceError into a structured JSON response."""
    entry = error_registry.get(exc.code)

    if entry is None:
        logger.error(
            "unregistered_error_code",
            extra={"error.code": exc.code, "error.message": exc.detail},
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": exc.code,
                    "title": "Internal error",
                    "message": "An unexpected error occurred.",
                    "retryable": False,
                    "user_action_required": False,
                    "remediation": [],
                }
            },
        )

    log_extra = {
        "error.code": exc.code,
        "error.kind": type(exc).__name__,
        "error.message_safe": entry.safe_message,
        "error.message": exc.detail,
        "error.retryable": entry.retryable,
        "http.path": request.url.path,
        **{f"error.ctx.{k}": v for k, v in exc.context.items()},
    }

    log_fn = _severity_to_log_fn(entry.severity)
    log_fn(entry.title, extra=log_extra)

    body = {
        "error": {
            "code": entry.code,
            "title": entry.title,
            "message": entry.safe_message,
            "retryable": entry.retryable,
            "user_action_required": entry.user_action_required,
            "remediation": entry.remediation,
        }
    }
    if entry.payment_required:
        body["paymentRequired"] = True
    if entry.exposes_reason and exc.reason is not None:
        body["error"]["reason"] = exc.reason

    return JSONResponse(status_code=entry.http_status, content=body)


def _severity_to_log_fn(severity: str):
    """Map registry severity to logger method."""
    return {
        "DEBUG": logger.debug,
        "INFO": logger.info,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.error)
