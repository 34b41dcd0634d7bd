"""
Fallback Balance Cache — process-local stand-in for the durable ledger.
======================================================================

Holds balances when the durable store is unreachable (or not configured,
i.e. mock mode). Owned explicitly: the ledger receives an instance at
construction and tests build their own.

Guarantees:
  - None across restarts or processes.
  - Last-writer-wins per wallet; the lock only keeps one entry from being
    torn by concurrent writers.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from app.utils.wallets import normalize_wallet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedAccount:
    balance: int = 0
    points: int = 0
    total_tokens_spent: int = 0


class FallbackBalanceCache:
    """Thread-safe wallet -> CachedAccount map."""

    def __init__(self) -> None:
        self._accounts: Dict[str, CachedAccount] = {}
        self._lock = threading.Lock()

    def get(self, wallet: str) -> CachedAccount:
        """Current entry, or an all-zero account when the wallet is unknown."""
        key = normalize_wallet(wallet)
        with self._lock:
            return self._accounts.get(key, CachedAccount())

    def __contains__(self, wallet: str) -> bool:
        with self._lock:
            return normalize_wallet(wallet) in self._accounts

    def __len__(self) -> int:
        with self._lock:
            return len(self._accounts)

    def put(self, wallet: str, account: CachedAccount) -> CachedAccount:
        key = normalize_wallet(wallet)
        with self._lock:
            self._accounts[key] = account
        return account

    def record_spend(
        self,
        wallet: str,
        credits_to_deduct: int,
        new_points_total: int,
        new_total_spent: int,
        new_balance: Optional[int] = None,
    ) -> CachedAccount:
        """Apply a spend without any concurrency guard.

        A caller-supplied *new_balance* wins; otherwise the cached balance is
        decremented and clamped at zero.
        """
        key = normalize_wallet(wallet)
        with self._lock:
            current = self._accounts.get(key, CachedAccount())
            if new_balance is None:
                balance = max(0, current.balance - credits_to_deduct)
            else:
                balance = max(0, new_balance)
            updated = CachedAccount(
                balance=balance,
                points=new_points_total,
                total_tokens_spent=new_total_spent,
            )
            self._accounts[key] = updated
        return updated

    def add(self, wallet: str, amount: int) -> CachedAccount:
        """Credit *amount*; points and total spent are preserved."""
        key = normalize_wallet(wallet)
        with self._lock:
            current = self._accounts.get(key, CachedAccount())
            updated = replace(current, balance=current.balance + amount)
            self._accounts[key] = updated
        return updated

    def items(self) -> List[Tuple[str, CachedAccount]]:
        """Point-in-time copy of every cached wallet."""
        with self._lock:
            return list(self._accounts.items())

    def clear(self) -> None:
        with self._lock:
            self._accounts.clear()
