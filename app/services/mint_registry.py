"""
Mint Registry — has this wallet completed the one-time NFT mint?

Reads the `tokens` table written by the mint flow. A wallet qualifies when
any of its rows is marked minted or carries an on-chain token id. The
ledger consults this only before creating a brand-new account row.

Errors propagate; the ledger decides whether a failed lookup opens or
closes the gate.
"""

import logging
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from app.core.database import get_engine
from app.models.chat_tokens import MintedToken

logger = logging.getLogger(__name__)

MINTED_STATUS = "minted"

tokens_table = MintedToken.__table__


class MintRegistry:
    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine if self._engine is not None else get_engine()

    def has_minted(self, wallet: str) -> bool:
        t = tokens_table
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(t.c.id)
                .where(sa.func.lower(t.c.wallet_address) == wallet.lower())
                .where(sa.or_(t.c.status == MINTED_STATUS, t.c.token_id > 0))
                .limit(1)
            ).first()
        return row is not None
