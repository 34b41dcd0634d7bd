"""
Chat Token Models
=================

SQLModel tables for the credit ledger:
- ChatTokenAccount: one row per wallet (balance, points, total spent).
- MintedToken: mint records owned by the NFT mint flow. The ledger only
  reads it to decide whether a wallet may get an account row.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Index
from sqlmodel import Field, SQLModel


class ChatTokenAccount(SQLModel, table=True):
    """Per-wallet credit balance. `balance` doubles as the OCC version."""

    __tablename__ = "chat_tokens"
    __table_args__ = (Index("ix_chat_tokens_leaderboard", "points", "total_tokens_spent"),)

    wallet_address: str = Field(primary_key=True, max_length=255)
    balance: int = Field(default=0)
    points: int = Field(default=0)
    total_tokens_spent: int = Field(default=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MintedToken(SQLModel, table=True):
    """A minted (or pending) NFT for a wallet."""

    __tablename__ = "tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    wallet_address: str = Field(index=True, max_length=255)
    token_id: Optional[int] = Field(default=None, nullable=True)
    status: str = Field(default="pending", max_length=50)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
