"""
Pytest configuration for token ledger tests.
Points the service at a throwaway data directory before any app import.
"""

import os
import tempfile

# Must be set before app.config is imported anywhere
_test_data_dir = tempfile.mkdtemp(prefix="tokenledger_test_")
os.environ.setdefault("TOKENLEDGER_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("TOKENLEDGER_DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")
os.environ.setdefault("TOKENLEDGER_LOG_DIR", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("TOKENLEDGER_FACILITATOR_API_KEY", "test-facilitator-key")

import pytest
from sqlmodel import Session

from app.core.database import build_engine, init_db
from app.models.chat_tokens import MintedToken
from app.services.fallback_cache import FallbackBalanceCache
from app.services.ledger_store import LedgerStore
from app.services.mint_registry import MintRegistry
from app.services.retry_policy import RetryPolicy
from app.services.token_ledger import TokenLedger

# Load error registry so LedgerServiceError returns correct HTTP status codes
from app.core.errors.registry import error_registry
error_registry.load()

WALLET = "0x" + "ab" * 20


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database per test, tables created."""
    eng = build_engine(f"sqlite:///{tmp_path}/ledger.db")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return LedgerStore(engine)


@pytest.fixture
def mint_registry(engine):
    return MintRegistry(engine)


@pytest.fixture
def cache():
    return FallbackBalanceCache()


@pytest.fixture
def fast_retry():
    """Default attempt budget without the 50ms waits."""
    return RetryPolicy(max_attempts=3, base_delay_s=0)


@pytest.fixture
def mint(engine):
    """Record a mint for a wallet in the `tokens` table."""

    def _mint(wallet: str, status: str = "minted", token_id=None):
        with Session(engine) as session:
            session.add(MintedToken(wallet_address=wallet, status=status, token_id=token_id))
            session.commit()

    return _mint


@pytest.fixture
def ledger(store, cache, mint_registry, fast_retry):
    """Durable ledger over the per-test database."""
    return TokenLedger(
        store=store,
        cache=cache,
        mint_registry=mint_registry,
        retry_policy=fast_retry,
        points_divisor=2000,
    )
