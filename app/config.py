"""
Token Ledger Application Configuration
=======================================

PURPOSE:
    Pydantic-Settings based configuration for the chat token ledger service.
    All settings can be overridden via environment variables (TOKENLEDGER_ prefix).

LEDGER:
    POINTS_DIVISOR is the single source of truth for points accrual
    (points = floor(total_tokens_spent / points_divisor)). Chat handlers and
    the ledger both read it from here.
"""

import logging
import os
from pydantic_settings import BaseSettings
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

_DEFAULT_FACILITATOR_URL = "https://api.cdp.coinbase.com/platform/v2/x402"


class Settings(BaseSettings):
    """Service settings. Ledger, pricing and payment knobs live together."""

    app_name: str = "tokenledger"
    debug: bool = False

    # Mock mode: no durable store at all, every balance lives in the
    # in-process fallback cache.
    mock_mode: bool = False

    # Persistence
    data_directory: str = "/data"
    database_url: Optional[str] = None

    # Ledger
    points_divisor: int = 2000
    ledger_max_attempts: int = 3
    ledger_retry_delay_ms: int = 50
    ledger_backoff_factor: float = 1.0

    # Mint precondition (collaborator `tokens` table)
    mint_gate_enabled: bool = True
    mint_check_fail_open: bool = True
    # Pre-payment mint lookup only; ledger store calls are never timed out
    mint_check_timeout_s: float = 10.0

    # Chat usage pricing
    default_model: str = "openai/gpt-4o-mini"
    model_token_multipliers: Dict[str, float] = {"openai/gpt-4o-mini": 1.0}

    # x402 payments (Base USDC)
    payment_network: str = "base"
    payment_recipient: str = "0xDA9097c5672928a16C42889cD4b07d9a766827ee"
    payment_asset: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    payment_resource_url: str = "https://xfroranft.xyz/api/chat/payment"
    payment_max_timeout_s: int = 60
    # Refuse payment discovery for wallets with no mint on record
    payment_require_mint: bool = True
    # 60% of each payment becomes credits (40% margin)
    payment_revenue_share: float = 0.6
    # GPT-4o-mini blended cost: 70% input @ $0.15/1M + 30% output @ $0.60/1M
    payment_avg_cost_per_1m_tokens_usd: float = 0.285

    # x402 facilitator (settlement)
    facilitator_url: str = _DEFAULT_FACILITATOR_URL
    facilitator_api_key: Optional[str] = None
    facilitator_timeout_s: float = 30.0

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "https://xfroranft.xyz"]

    class Config:
        env_file = ".env"
        env_prefix = "TOKENLEDGER_"

    def get_database_url(self) -> str:
        """Resolve the durable store URL.

        Order: TOKENLEDGER_DATABASE_URL, then DATABASE_URL (Docker/Railway
        convention), then a SQLite file under data_directory.
        """
        if self.database_url:
            return self.database_url
        env_url = os.environ.get("DATABASE_URL")
        if env_url:
            return env_url
        return f"sqlite:///{os.path.join(self.data_directory, 'tokenledger.db')}"


settings = Settings()

if settings.points_divisor <= 0:
    raise ValueError(
        f"TOKENLEDGER_POINTS_DIVISOR must be positive, got {settings.points_divisor}"
    )

logger.info(
    "Token ledger mode: %s (points_divisor=%d)",
    "fallback-only" if settings.mock_mode else "durable",
    settings.points_divisor,
)
