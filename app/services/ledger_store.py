"""
Ledger Store — durable chat_tokens access via SQLAlchemy Core.
==============================================================

PURPOSE:
    The only code that touches the `chat_tokens` table. Exposes three
    single-statement primitives the ledger composes into its optimistic
    concurrency loop:

      read_account()     SELECT one row, coerced into an AccountSnapshot
      compare_and_set()  UPDATE ... WHERE wallet = ? AND balance = <version>
      insert_account()   INSERT, AccountExistsError on unique violation

    plus the leaderboard reads (top_accounts, count_accounts, count_ahead).

    All methods are synchronous and open their own transaction; the async
    ledger calls them through run_sync().

COERCION:
    Stored numerics are coerced exactly once, here. Anything non-numeric
    (NULL, '', 'abc') reads as 0 and a negative balance reads as 0. The raw
    stored balance is kept as `version` so the conditional update still
    matches a malformed row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from app.core.database import get_engine
from app.models.chat_tokens import ChatTokenAccount

logger = logging.getLogger(__name__)

chat_tokens_table = ChatTokenAccount.__table__


class AccountExistsError(Exception):
    """Insert lost a race: another request created the row first."""


def coerce_int(value: Any) -> int:
    """Best-effort integer conversion; anything unparseable becomes 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        if isinstance(value, float):
            return int(value)
        text = str(value).strip()
        if not text:
            return 0
        try:
            return int(text)
        except ValueError:
            return int(float(text))
    except (TypeError, ValueError, OverflowError):
        return 0


@dataclass(frozen=True)
class AccountSnapshot:
    """A chat_tokens row as seen at one instant."""

    wallet_address: str
    balance: int
    points: int
    total_tokens_spent: int
    version: Any  # raw stored balance, used as the OCC guard

    @classmethod
    def from_row(cls, row) -> "AccountSnapshot":
        m = row._mapping
        return cls(
            wallet_address=m["wallet_address"],
            balance=max(0, coerce_int(m["balance"])),
            points=max(0, coerce_int(m["points"])),
            total_tokens_spent=max(0, coerce_int(m["total_tokens_spent"])),
            version=m["balance"],
        )


class LedgerStore:
    """chat_tokens table access. Each method uses its own connection."""

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine if self._engine is not None else get_engine()

    def read_account(self, wallet: str) -> Optional[AccountSnapshot]:
        t = chat_tokens_table
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(
                    t.c.wallet_address,
                    t.c.balance,
                    t.c.points,
                    t.c.total_tokens_spent,
                ).where(t.c.wallet_address == wallet)
            ).first()
        if row is None:
            return None
        return AccountSnapshot.from_row(row)

    def compare_and_set(
        self,
        wallet: str,
        expected_version: Any,
        balance: int,
        points: int,
        total_tokens_spent: int,
    ) -> bool:
        """
        Write the new values only if the stored balance still equals
        *expected_version*. Returns True iff exactly one row changed.
        """
        t = chat_tokens_table
        guard = (
            t.c.balance.is_(None)
            if expected_version is None
            else t.c.balance == expected_version
        )
        with self.engine.begin() as conn:
            result = conn.execute(
                t.update()
                .where(t.c.wallet_address == wallet)
                .where(guard)
                .values(
                    balance=int(balance),
                    points=int(points),
                    total_tokens_spent=int(total_tokens_spent),
                    updated_at=datetime.now(timezone.utc),
                )
            )
            return result.rowcount == 1

    def insert_account(
        self,
        wallet: str,
        balance: int = 0,
        points: int = 0,
        total_tokens_spent: int = 0,
    ) -> AccountSnapshot:
        t = chat_tokens_table
        now = datetime.now(timezone.utc)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    t.insert().values(
                        wallet_address=wallet,
                        balance=int(balance),
                        points=int(points),
                        total_tokens_spent=int(total_tokens_spent),
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            raise AccountExistsError(wallet) from exc

        logger.info("chat_tokens row created: wallet=%s balance=%d", wallet, balance)
        return AccountSnapshot(
            wallet_address=wallet,
            balance=int(balance),
            points=int(points),
            total_tokens_spent=int(total_tokens_spent),
            version=int(balance),
        )

    # ------------------------------------------------------------------
    # Leaderboard reads
    # ------------------------------------------------------------------

    def top_accounts(self, limit: int, offset: int = 0) -> List[AccountSnapshot]:
        """Accounts ordered by points, then total spent, both descending."""
        t = chat_tokens_table
        with self.engine.connect() as conn:
            rows = conn.execute(
                sa.select(
                    t.c.wallet_address,
                    t.c.balance,
                    t.c.points,
                    t.c.total_tokens_spent,
                )
                .order_by(
                    t.c.points.desc(),
                    t.c.total_tokens_spent.desc(),
                    t.c.wallet_address.asc(),
                )
                .limit(limit)
                .offset(offset)
            ).all()
        return [AccountSnapshot.from_row(row) for row in rows]

    def count_accounts(self) -> int:
        t = chat_tokens_table
        with self.engine.connect() as conn:
            return int(conn.execute(sa.select(sa.func.count()).select_from(t)).scalar_one())

    def count_ahead(self, points: int) -> int:
        """Number of accounts with strictly more points than *points*."""
        t = chat_tokens_table
        with self.engine.connect() as conn:
            return int(conn.execute(
                sa.select(sa.func.count()).select_from(t).where(t.c.points > points)
            ).scalar_one())
