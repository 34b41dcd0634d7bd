from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import asyncio

from app.config import settings

from app.routers import health, token_balance, usage, payment, leaderboard
from app.core.database import init_db, close_db
from app.core.structured_logging import APP_VERSION, setup_logging
from app.core.errors import LedgerServiceError
from app.core.errors.registry import error_registry
from app.core.errors.middleware import ledger_error_handler
from app.core.log_middleware import CorrelationMiddleware
from app.services.token_ledger import get_token_ledger

# Initialize structured logging before any logger calls
setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

logger = logging.getLogger(__name__)

# API metadata
API_TITLE = "Token Ledger API"
API_VERSION = APP_VERSION

API_DESCRIPTION = """
## Token Ledger - Chat Credits for NFT Holders

Per-wallet chat credit balances, points and x402 USDC top-ups.

### Flow
1. Mint an NFT (creates the wallet's entry in the `tokens` table)
2. Buy credits: `POST /api/chat/payment` (x402)
3. Chat: every completion is charged through `POST /api/chat/usage`
4. Every 2000 tokens spent earns one point

Set TOKENLEDGER_MOCK_MODE=true to run without a database (balances are
kept in process memory only).
"""

# Tag metadata for organizing endpoints
TAGS_METADATA = [
    {
        "name": "health",
        "description": "Health check endpoint for monitoring. No authentication required.",
    },
    {
        "name": "chat-tokens",
        "description": "Balance queries and usage charging for the chat experience.",
    },
    {
        "name": "payments",
        "description": "x402 payment discovery and settlement. Settled payments become chat credits.",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "Starting Token Ledger API v%s in %s mode...",
        API_VERSION, "mock" if settings.mock_mode else "durable",
    )

    error_registry.load()

    # Thread pool for run_sync() / asyncio.to_thread()
    executor = ThreadPoolExecutor(max_workers=16)
    loop = asyncio.get_running_loop()
    loop.set_default_executor(executor)
    logger.info("ThreadPoolExecutor configured (max_workers=16)")

    if not settings.mock_mode:
        init_db()
        logger.info("Database initialized")

    ledger = get_token_ledger()
    logger.info("Ledger ready: mode=%s points_divisor=%d", ledger.mode, ledger.points_divisor)

    yield

    # Shutdown
    logger.info("Shutting down Token Ledger API...")
    if not settings.mock_mode:
        close_db()
        logger.info("Database connection closed")
    executor.shutdown(wait=False)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        openapi_tags=TAGS_METADATA,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Payment-Required", "X-Request-ID"],
    )

    # Correlation ID middleware (request_id + correlation_id in every log)
    app.add_middleware(CorrelationMiddleware)

    # Structured error handler for LedgerServiceError
    app.add_exception_handler(LedgerServiceError, ledger_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(token_balance.router, prefix="/api/chat", tags=["chat-tokens"])
    app.include_router(usage.router, prefix="/api/chat", tags=["chat-tokens"])
    app.include_router(payment.router, prefix="/api/chat", tags=["payments"])
    app.include_router(leaderboard.router, prefix="/api/chat", tags=["leaderboard"])

    return app


app = create_app()


@app.get("/", tags=["health"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "docs": "/docs",
        "health": "/api/health",
    }
