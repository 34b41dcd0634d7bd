"""
Token Ledger — per-wallet chat credits under optimistic concurrency
===================================================================

PURPOSE:
    Owns every mutation of a wallet's credit balance:
    1. **spend()**  — debit after a billable action (chat completion). Clamps
       at zero; records the caller-computed points / total spent.
    2. **top_up()** — credit after a settled payment. Leaves points and total
       spent untouched.
    3. **get_balance()** — read path for the balance endpoint and the chat
       pre-flight gate.
    4. **leaderboard()** / **rank_of()** — points ranking over all accounts.

CONCURRENCY (durable mode):
    read row -> compute -> UPDATE ... WHERE balance = <balance read>
    Zero rows updated means another writer got there first: re-read and
    recompute, up to RetryPolicy.max_attempts (default 3, 50ms apart).
    Racing spend/top-up pairs therefore serialize; neither delta is lost
    while the retry budget holds.

DEGRADATION:
    Budget exhausted or store unreachable -> the injected FallbackBalanceCache
    takes the write (last-writer-wins, process-local). spend()/top_up() never
    raise for bookkeeping failures: the chat reply or the USDC transfer has
    already happened.

ACCOUNT CREATION:
    Rows are created lazily. In durable mode creation requires the wallet to
    have minted (MintRegistry). A failed mint lookup is fail-open by default
    (TOKENLEDGER_MINT_CHECK_FAIL_OPEN); route handlers do the real access
    control before the ledger is reached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from app.config import settings
from app.core.async_utils import run_sync
from app.services.fallback_cache import CachedAccount, FallbackBalanceCache
from app.services.ledger_store import AccountExistsError, AccountSnapshot, LedgerStore
from app.services.mint_registry import MintRegistry
from app.services.retry_policy import RetryPolicy
from app.utils.wallets import normalize_wallet

logger = logging.getLogger(__name__)

__all__ = [
    "TokenLedger",
    "LedgerResult",
    "LedgerContentionError",
    "LedgerUnavailableError",
    "Leaderboard",
    "LeaderboardEntry",
    "WalletRank",
    "SOURCE_DURABLE",
    "SOURCE_FALLBACK",
    "build_token_ledger",
    "get_token_ledger",
]

T = TypeVar("T")

SOURCE_DURABLE = "durable"
SOURCE_FALLBACK = "fallback"


class LedgerContentionError(Exception):
    """A conditional update matched no row: the balance moved under us."""


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a ledger read or write."""

    wallet_address: str
    balance: int
    points: int
    total_tokens_spent: int
    source: str = SOURCE_DURABLE
    applied: bool = True  # False: no row and no mint, nothing recorded
    attempts: int = 1

    def to_dict(self) -> dict:
        return {"balance": self.balance, "points": self.points}

    @classmethod
    def from_snapshot(cls, snap: AccountSnapshot, attempts: int = 1) -> "LedgerResult":
        return cls(
            wallet_address=snap.wallet_address,
            balance=snap.balance,
            points=snap.points,
            total_tokens_spent=snap.total_tokens_spent,
            attempts=attempts,
        )

    @classmethod
    def from_cache(cls, wallet: str, cached: CachedAccount) -> "LedgerResult":
        return cls(
            wallet_address=wallet,
            balance=cached.balance,
            points=cached.points,
            total_tokens_spent=cached.total_tokens_spent,
            source=SOURCE_FALLBACK,
        )


class LedgerUnavailableError(Exception):
    """A read with no fallback (leaderboard) could not reach the store."""


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    wallet_address: str
    points: int
    total_tokens_spent: int
    balance: int


@dataclass(frozen=True)
class Leaderboard:
    entries: List[LeaderboardEntry]
    total: int
    limit: int
    offset: int
    source: str = SOURCE_DURABLE


@dataclass(frozen=True)
class WalletRank:
    """rank is None for a wallet with no account."""

    wallet_address: str
    rank: Optional[int]
    points: int
    total_users: int
    source: str = SOURCE_DURABLE


class TokenLedger:
    """
    Balance ledger over an optional durable store.

    store=None means fallback-only (mock) mode: every operation goes to the
    cache. Collaborators are injected so tests can build isolated ledgers.
    """

    def __init__(
        self,
        store: Optional[LedgerStore],
        cache: FallbackBalanceCache,
        mint_registry: Optional[MintRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        points_divisor: Optional[int] = None,
        mint_gate_enabled: bool = True,
        mint_check_fail_open: bool = True,
    ) -> None:
        self._store = store
        self._cache = cache
        self._mint_registry = mint_registry
        self._retry = retry_policy or RetryPolicy()
        self._points_divisor = points_divisor or settings.points_divisor
        self._mint_gate_enabled = mint_gate_enabled
        self._mint_check_fail_open = mint_check_fail_open

        if self._points_divisor <= 0:
            raise ValueError(f"points_divisor must be positive, got {self._points_divisor}")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def durable(self) -> bool:
        return self._store is not None

    @property
    def mode(self) -> str:
        return SOURCE_DURABLE if self.durable else SOURCE_FALLBACK

    @property
    def points_divisor(self) -> int:
        return self._points_divisor

    def points_for(self, total_tokens_spent: int) -> int:
        return max(0, total_tokens_spent) // self._points_divisor

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_balance(self, wallet_address: str) -> LedgerResult:
        """
        Current balance and points.

        A missing row is created at zero when the wallet has minted; a
        wallet that never minted gets zeros and no row. Store errors fall
        back to the cache.
        """
        wallet = normalize_wallet(wallet_address)

        if not self.durable:
            return LedgerResult.from_cache(wallet, self._cache.get(wallet))

        try:
            current = await self._call(self._store.read_account, wallet)
            if current is not None:
                return LedgerResult.from_snapshot(current)

            if not await self._mint_allows_creation(wallet):
                return LedgerResult(
                    wallet_address=wallet, balance=0, points=0,
                    total_tokens_spent=0, applied=False,
                )

            try:
                created = await self._call(self._store.insert_account, wallet, 0, 0, 0)
            except AccountExistsError:
                created = await self._call(self._store.read_account, wallet)
                if created is None:
                    raise
            return LedgerResult.from_snapshot(created)
        except Exception as exc:
            logger.error(
                "Balance read failed for %s, serving fallback cache: %s",
                wallet, exc,
            )
            return LedgerResult.from_cache(wallet, self._cache.get(wallet))

    # ------------------------------------------------------------------
    # Spend
    # ------------------------------------------------------------------

    async def spend(
        self,
        wallet_address: str,
        credits_to_deduct: int,
        new_points_total: int,
        new_total_spent: int,
        new_balance: Optional[int] = None,
    ) -> LedgerResult:
        """
        Debit *credits_to_deduct* and record the caller's usage totals.

        new_balance is the caller's own estimate (prior read minus credits).
        The durable path ignores it in favour of the live balance; it seeds
        a newly created row and is what the fallback cache records.
        """
        if credits_to_deduct < 0:
            raise ValueError(f"credits_to_deduct must be non-negative, got {credits_to_deduct}")
        if new_points_total < 0 or new_total_spent < 0:
            raise ValueError("points and total spent must be non-negative")

        wallet = normalize_wallet(wallet_address)

        if not self.durable:
            cached = self._cache.record_spend(
                wallet, credits_to_deduct, new_points_total, new_total_spent, new_balance,
            )
            return LedgerResult.from_cache(wallet, cached)

        try:
            return await self._spend_durable(
                wallet, credits_to_deduct, new_points_total, new_total_spent, new_balance,
            )
        except Exception as exc:
            cached = self._cache.record_spend(
                wallet, credits_to_deduct, new_points_total, new_total_spent, new_balance,
            )
            logger.error(
                "Spend for %s not persisted after %d attempts (%s: %s); "
                "recorded in fallback cache: balance=%d",
                wallet, self._retry.max_attempts, type(exc).__name__, exc, cached.balance,
            )
            return LedgerResult.from_cache(wallet, cached)

    async def _spend_durable(
        self,
        wallet: str,
        credits_to_deduct: int,
        new_points_total: int,
        new_total_spent: int,
        new_balance: Optional[int],
    ) -> LedgerResult:
        last_exc: Optional[Exception] = None

        for attempt in self._retry.attempts():
            try:
                current = await self._call(self._store.read_account, wallet)

                if current is None:
                    if not await self._mint_allows_creation(wallet):
                        logger.info("Spend skipped: %s has no account and has not minted", wallet)
                        return LedgerResult(
                            wallet_address=wallet, balance=0, points=0,
                            total_tokens_spent=0, applied=False, attempts=attempt,
                        )
                    seed = max(0, new_balance) if new_balance is not None else 0
                    created = await self._call(
                        self._store.insert_account,
                        wallet, seed, new_points_total, new_total_spent,
                    )
                    return LedgerResult.from_snapshot(created, attempts=attempt)

                adjusted = max(0, current.balance - credits_to_deduct)
                # Totals never move backwards, even if a racing spend that
                # read an older total lands second.
                points = max(current.points, new_points_total)
                total_spent = max(current.total_tokens_spent, new_total_spent)

                if await self._call(
                    self._store.compare_and_set,
                    wallet, current.version, adjusted, points, total_spent,
                ):
                    if attempt > 1:
                        logger.info("Spend for %s applied on attempt %d", wallet, attempt)
                    return LedgerResult(
                        wallet_address=wallet,
                        balance=adjusted,
                        points=points,
                        total_tokens_spent=total_spent,
                        attempts=attempt,
                    )
                last_exc = LedgerContentionError(
                    f"balance for {wallet} changed since read ({current.balance})"
                )
                logger.info(
                    "Spend conflict for %s (attempt %d/%d)",
                    wallet, attempt, self._retry.max_attempts,
                )
            except AccountExistsError as exc:
                last_exc = exc
                logger.info(
                    "Account for %s created concurrently (attempt %d/%d)",
                    wallet, attempt, self._retry.max_attempts,
                )
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "Spend store error for %s (attempt %d/%d): %s",
                    wallet, attempt, self._retry.max_attempts, exc,
                )

            if self._retry.has_next(attempt):
                await self._retry.sleep(attempt)

        raise last_exc

    # ------------------------------------------------------------------
    # Top-up
    # ------------------------------------------------------------------

    async def top_up(self, wallet_address: str, amount: int) -> int:
        """Credit *amount* after a confirmed payment. Returns the new balance."""
        return (await self.top_up_result(wallet_address, amount)).balance

    async def top_up_result(self, wallet_address: str, amount: int) -> LedgerResult:
        if amount <= 0:
            raise ValueError(f"top-up amount must be positive, got {amount}")

        wallet = normalize_wallet(wallet_address)

        if not self.durable:
            return LedgerResult.from_cache(wallet, self._cache.add(wallet, amount))

        try:
            return await self._top_up_durable(wallet, amount)
        except Exception as exc:
            cached = self._cache.add(wallet, amount)
            logger.error(
                "Top-up for %s not persisted after %d attempts (%s: %s); "
                "recorded in fallback cache: balance=%d",
                wallet, self._retry.max_attempts, type(exc).__name__, exc, cached.balance,
            )
            return LedgerResult.from_cache(wallet, cached)

    async def _top_up_durable(self, wallet: str, amount: int) -> LedgerResult:
        last_exc: Optional[Exception] = None

        for attempt in self._retry.attempts():
            try:
                current = await self._call(self._store.read_account, wallet)

                if current is None:
                    if not await self._mint_allows_creation(wallet):
                        logger.warning(
                            "Top-up of %d for %s not recorded: wallet has not minted",
                            amount, wallet,
                        )
                        return LedgerResult(
                            wallet_address=wallet, balance=amount, points=0,
                            total_tokens_spent=0, applied=False, attempts=attempt,
                        )
                    created = await self._call(self._store.insert_account, wallet, amount, 0, 0)
                    return LedgerResult.from_snapshot(created, attempts=attempt)

                new_balance = current.balance + amount
                if await self._call(
                    self._store.compare_and_set,
                    wallet, current.version, new_balance,
                    current.points, current.total_tokens_spent,
                ):
                    logger.info(
                        "Top-up applied: wallet=%s amount=%d balance=%d->%d",
                        wallet, amount, current.balance, new_balance,
                    )
                    return LedgerResult(
                        wallet_address=wallet,
                        balance=new_balance,
                        points=current.points,
                        total_tokens_spent=current.total_tokens_spent,
                        attempts=attempt,
                    )
                last_exc = LedgerContentionError(
                    f"balance for {wallet} changed since read ({current.balance})"
                )
                logger.info(
                    "Top-up conflict for %s (attempt %d/%d)",
                    wallet, attempt, self._retry.max_attempts,
                )
            except AccountExistsError as exc:
                last_exc = exc
                logger.info(
                    "Account for %s created concurrently (attempt %d/%d)",
                    wallet, attempt, self._retry.max_attempts,
                )
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "Top-up store error for %s (attempt %d/%d): %s",
                    wallet, attempt, self._retry.max_attempts, exc,
                )

            if self._retry.has_next(attempt):
                await self._retry.sleep(attempt)

        raise last_exc

    # ------------------------------------------------------------------
    # Leaderboard
    # ------------------------------------------------------------------

    async def leaderboard(self, limit: int = 10, offset: int = 0) -> Leaderboard:
        """
        Accounts ranked by points, ties broken by total spent.

        Ranks are 1-based and continue across pages (offset + position).
        Mock mode ranks the fallback cache. In durable mode a store error
        raises LedgerUnavailableError; there is no cache fallback.
        """
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        if offset < 0:
            raise ValueError(f"offset must be >= 0, got {offset}")

        if not self.durable:
            ranked = self._ranked_cache()
            page = ranked[offset:offset + limit]
            return Leaderboard(
                entries=[
                    LeaderboardEntry(offset + i + 1, wallet, acct.points, acct.total_tokens_spent, acct.balance)
                    for i, (wallet, acct) in enumerate(page)
                ],
                total=len(ranked),
                limit=limit,
                offset=offset,
                source=SOURCE_FALLBACK,
            )

        try:
            rows = await self._call(self._store.top_accounts, limit, offset)
            total = await self._call(self._store.count_accounts)
        except Exception as exc:
            logger.error("Leaderboard read failed: %s", exc)
            raise LedgerUnavailableError(str(exc)) from exc

        return Leaderboard(
            entries=[
                LeaderboardEntry(offset + i + 1, row.wallet_address, row.points, row.total_tokens_spent, row.balance)
                for i, row in enumerate(rows)
            ],
            total=total,
            limit=limit,
            offset=offset,
        )

    async def rank_of(self, wallet_address: str) -> WalletRank:
        """1 + the number of accounts with strictly more points."""
        wallet = normalize_wallet(wallet_address)

        if not self.durable:
            ranked = self._ranked_cache()
            accounts = dict(ranked)
            if wallet not in accounts:
                return WalletRank(wallet, None, 0, len(ranked), SOURCE_FALLBACK)
            points = accounts[wallet].points
            ahead = sum(1 for _, acct in ranked if acct.points > points)
            return WalletRank(wallet, ahead + 1, points, len(ranked), SOURCE_FALLBACK)

        try:
            current = await self._call(self._store.read_account, wallet)
            total = await self._call(self._store.count_accounts)
            if current is None:
                return WalletRank(wallet, None, 0, total)
            ahead = await self._call(self._store.count_ahead, current.points)
        except Exception as exc:
            logger.error("Rank lookup failed for %s: %s", wallet, exc)
            raise LedgerUnavailableError(str(exc)) from exc

        return WalletRank(wallet, ahead + 1, current.points, total)

    def _ranked_cache(self) -> List[Tuple[str, CachedAccount]]:
        return sorted(
            self._cache.items(),
            key=lambda item: (-item[1].points, -item[1].total_tokens_spent, item[0]),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        # No timeout: an abandoned write would still commit and the retry
        # loop would apply the same delta again. The engine bounds waits.
        return await run_sync(func, *args)

    async def _mint_allows_creation(self, wallet: str) -> bool:
        """Mint precondition for creating a new row."""
        if not self._mint_gate_enabled or self._mint_registry is None:
            return True
        try:
            return await self._call(self._mint_registry.has_minted, wallet)
        except Exception as exc:
            logger.warning(
                "Mint check failed for %s (%s); %s",
                wallet, exc,
                "allowing account creation" if self._mint_check_fail_open else "refusing account creation",
            )
            return self._mint_check_fail_open


# ---------------------------------------------------------------------------
# Module-level instance
# ---------------------------------------------------------------------------

_token_ledger: Optional[TokenLedger] = None


def build_token_ledger(
    store: Optional[LedgerStore] = None,
    cache: Optional[FallbackBalanceCache] = None,
    mint_registry: Optional[MintRegistry] = None,
) -> TokenLedger:
    """Build a ledger from settings. mock_mode yields a fallback-only ledger."""
    if settings.mock_mode:
        store = None
    elif store is None:
        store = LedgerStore()

    if mint_registry is None and store is not None:
        mint_registry = MintRegistry()

    return TokenLedger(
        store=store,
        cache=cache or FallbackBalanceCache(),
        mint_registry=mint_registry,
        retry_policy=RetryPolicy.from_settings(),
        points_divisor=settings.points_divisor,
        mint_gate_enabled=settings.mint_gate_enabled,
        mint_check_fail_open=settings.mint_check_fail_open,
    )


def get_token_ledger() -> TokenLedger:
    """Get or create the process-wide ledger (FastAPI dependency)."""
    global _token_ledger
    if _token_ledger is None:
        _token_ledger = build_token_ledger()
        logger.info("Token ledger initialized in %s mode", _token_ledger.mode)
    return _token_ledger
