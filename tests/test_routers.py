"""
API Router Tests
================

End-to-end HTTP tests through the FastAPI app with the ledger, facilitator
and mint registry dependencies overridden to per-test instances.

Coverage:
  - GET  /api/chat/token-balance  (missing wallet, unknown, minted, existing)
  - POST /api/chat/usage          (402 gate, deduction, lowBalance, estimate,
                                   blank wallet)
  - GET  /api/chat/payment        (402 discovery, single vs all options)
  - POST /api/chat/payment        (discovery, mint check, decode, amount,
                                   settlement failure, success top-up)
  - GET  /api/chat/leaderboard    (paging, ranks, 422 bounds, 503 store down)
  - POST /api/chat/leaderboard    (wallet rank, unknown wallet, missing wallet)
  - GET  /api/health
"""

import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.routers.payment import get_facilitator_client, get_mint_registry
from app.services.payment_service import FacilitatorClient
from app.services.token_ledger import LedgerUnavailableError, get_token_ledger

WALLET = "0x" + "ab" * 20

PAYMENT_PAYLOAD = {
    "x402Version": 1,
    "scheme": "exact",
    "network": "base",
    "payload": {"signature": "0xsig", "authorization": {"from": WALLET, "value": "1000000"}},
}


def _encoded(payload) -> str:
    return base64.b64encode(json.dumps(payload).encode()).decode()


@pytest.fixture
def settle_calls():
    return []


@pytest.fixture
def facilitator_response():
    """Mutable response spec for the mocked facilitator."""
    return {"status": 200, "json": {"success": True, "payer": WALLET, "transaction": "0xfeed"}}


@pytest.fixture
def client(ledger, mint_registry, settle_calls, facilitator_response):
    def handler(request: httpx.Request) -> httpx.Response:
        settle_calls.append(json.loads(request.content))
        return httpx.Response(facilitator_response["status"], json=facilitator_response["json"])

    facilitator = FacilitatorClient(
        base_url="https://facilitator.test",
        api_key="test-key",
        transport=httpx.MockTransport(handler),
    )

    app.dependency_overrides[get_token_ledger] = lambda: ledger
    app.dependency_overrides[get_facilitator_client] = lambda: facilitator
    app.dependency_overrides[get_mint_registry] = lambda: mint_registry
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Token balance
# ---------------------------------------------------------------------------

class TestTokenBalance:

    def test_missing_wallet(self, client):
        resp = client.get("/api/chat/token-balance")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "TKL-API-001"

    def test_blank_wallet(self, client):
        resp = client.get("/api/chat/token-balance", params={"wallet": "  "})
        assert resp.status_code == 400

    def test_unknown_wallet_reads_zero(self, client, store):
        resp = client.get("/api/chat/token-balance", params={"wallet": WALLET})
        assert resp.status_code == 200
        assert resp.json() == {"balance": 0, "points": 0}
        assert store.read_account(WALLET) is None

    def test_existing_wallet(self, client, store):
        store.insert_account(WALLET, 4321, 3, 6500)
        resp = client.get("/api/chat/token-balance", params={"wallet": WALLET.upper().replace("0X", "0x")})
        assert resp.json() == {"balance": 4321, "points": 3}

    def test_request_id_echoed(self, client):
        resp = client.get(
            "/api/chat/token-balance",
            params={"wallet": WALLET},
            headers={"X-Request-ID": "req-123"},
        )
        assert resp.headers["x-request-id"] == "req-123"


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------

class TestUsage:

    def test_empty_balance_requires_payment(self, client, mint):
        mint(WALLET)
        resp = client.post("/api/chat/usage", json={"walletAddress": WALLET, "rawTokensUsed": 10})
        assert resp.status_code == 402
        body = resp.json()
        assert body["paymentRequired"] is True
        assert body["error"]["code"] == "TKL-LED-001"

    def test_deducts_credits(self, client, store):
        store.insert_account(WALLET, 1000, 0, 2900)
        resp = client.post("/api/chat/usage", json={"walletAddress": WALLET, "rawTokensUsed": 150})
        assert resp.status_code == 200
        body = resp.json()
        assert body == {
            "tokensUsed": 150,
            "rawTokensUsed": 150,
            "tokenMultiplier": 1.0,
            "newBalance": 850,
            "points": 1,
        }
        row = store.read_account(WALLET)
        assert (row.balance, row.points, row.total_tokens_spent) == (850, 1, 3050)

    def test_low_balance_flag(self, client, store):
        store.insert_account(WALLET, 100, 0, 0)
        resp = client.post("/api/chat/usage", json={"walletAddress": WALLET, "rawTokensUsed": 500})
        body = resp.json()
        assert body["newBalance"] == 0
        assert body["lowBalance"] is True

    def test_estimates_from_content(self, client, store):
        store.insert_account(WALLET, 100, 0, 0)
        resp = client.post(
            "/api/chat/usage",
            json={"walletAddress": WALLET, "rawTokensUsed": 0, "content": "y" * 40},
        )
        assert resp.json()["rawTokensUsed"] == 10
        assert resp.json()["newBalance"] == 90

    @pytest.mark.parametrize("wallet", ["   ", "\t"])
    def test_blank_wallet_rejected(self, client, wallet):
        resp = client.post("/api/chat/usage", json={"walletAddress": wallet, "rawTokensUsed": 10})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "TKL-API-006"

    def test_empty_wallet_is_validation_error(self, client):
        resp = client.post("/api/chat/usage", json={"walletAddress": "", "rawTokensUsed": 10})
        assert resp.status_code == 422

    def test_negative_tokens_rejected(self, client):
        resp = client.post("/api/chat/usage", json={"walletAddress": WALLET, "rawTokensUsed": -1})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Payment discovery
# ---------------------------------------------------------------------------

class TestPaymentDiscovery:

    def test_get_lists_all_options(self, client):
        resp = client.get("/api/chat/payment")
        assert resp.status_code == 402
        assert resp.headers["x-payment-required"] == "true"
        body = resp.json()
        assert body["x402Version"] == 1
        assert len(body["accepts"]) == 4

    def test_get_single_option(self, client):
        body = client.get("/api/chat/payment", params={"amount": "1"}).json()
        assert [r["maxAmountRequired"] for r in body["accepts"]] == ["1000000"]

    def test_get_unknown_amount_lists_all(self, client):
        body = client.get("/api/chat/payment", params={"amount": "7"}).json()
        assert len(body["accepts"]) == 4

    def test_post_without_header_uses_body_amount(self, client, mint):
        mint(WALLET)
        resp = client.post("/api/chat/payment", json={"amount": 0.5, "walletAddress": WALLET})
        assert resp.status_code == 402
        assert [r["maxAmountRequired"] for r in resp.json()["accepts"]] == ["500000"]

    def test_post_without_header_refuses_unminted_wallet(self, client):
        resp = client.post("/api/chat/payment", json={"amount": 1, "walletAddress": WALLET})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "TKL-PAY-002"

    def test_post_without_body(self, client):
        resp = client.post("/api/chat/payment")
        assert resp.status_code == 402


# ---------------------------------------------------------------------------
# Payment settlement
# ---------------------------------------------------------------------------

class TestPaymentSettlement:

    def test_invalid_header(self, client):
        resp = client.post("/api/chat/payment?amount=1", headers={"X-PAYMENT": "garbage"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "TKL-API-002"

    def test_missing_amount(self, client):
        resp = client.post("/api/chat/payment", headers={"X-PAYMENT": _encoded(PAYMENT_PAYLOAD)})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "TKL-API-003"

    def test_unknown_amount(self, client, settle_calls):
        resp = client.post(
            "/api/chat/payment?amount=3",
            headers={"X-PAYMENT": _encoded(PAYMENT_PAYLOAD)},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "TKL-API-004"
        assert settle_calls == []

    def test_settlement_failure(self, client, store, facilitator_response):
        facilitator_response.update(status=502, json={"error": "bad gateway"})
        resp = client.post(
            "/api/chat/payment?amount=1",
            headers={"X-PAYMENT": _encoded(PAYMENT_PAYLOAD)},
        )
        assert resp.status_code == 402
        assert resp.json()["error"]["code"] == "TKL-PAY-001"
        assert resp.json()["error"]["reason"] == "facilitator_error"
        assert store.read_account(WALLET) is None

    def test_success_tops_up(self, client, store, mint, settle_calls):
        mint(WALLET)
        store.insert_account(WALLET, 100, 2, 4000)

        resp = client.post(
            "/api/chat/payment?amount=1",
            headers={"X-PAYMENT": _encoded(PAYMENT_PAYLOAD)},
        )

        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "tokensAdded": 2_105_263,
            "newBalance": 2_105_363,
            "paymentAmount": "1",
            "walletAddress": WALLET,
            "transaction": "0xfeed",
        }
        assert settle_calls[0]["paymentRequirements"]["maxAmountRequired"] == "1000000"
        row = store.read_account(WALLET)
        assert (row.balance, row.points, row.total_tokens_spent) == (2_105_363, 2, 4000)

    def test_payer_falls_back_to_authorization(self, client, store, mint, facilitator_response):
        mint(WALLET)
        facilitator_response["json"] = {"success": True, "transaction": "0xbeef"}

        resp = client.post(
            "/api/chat/payment?amount=2",
            headers={"X-PAYMENT": json.dumps(PAYMENT_PAYLOAD)},
        )

        assert resp.status_code == 200
        assert resp.json()["walletAddress"] == WALLET
        assert store.read_account(WALLET).balance == 4_210_526

    def test_payer_unknown(self, client, facilitator_response):
        facilitator_response["json"] = {"success": True, "transaction": "0xbeef"}
        payload = {"x402Version": 1, "payload": {}}

        resp = client.post("/api/chat/payment?amount=1", headers={"X-PAYMENT": json.dumps(payload)})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "TKL-API-005"


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------

class TestLeaderboardRoutes:

    def test_ranked_page(self, client, store):
        store.insert_account("0x1", 11, 3, 6000)
        store.insert_account("0x2", 22, 7, 14000)
        store.insert_account("0x3", 33, 3, 7000)

        resp = client.get("/api/chat/leaderboard", params={"limit": 2, "offset": 1})

        assert resp.status_code == 200
        assert resp.json() == {
            "leaderboard": [
                {"rank": 2, "wallet_address": "0x3", "points": 3, "total_tokens_spent": 7000, "balance": 33},
                {"rank": 3, "wallet_address": "0x1", "points": 3, "total_tokens_spent": 6000, "balance": 11},
            ],
            "total": 3,
            "limit": 2,
            "offset": 1,
        }

    def test_defaults_on_empty_table(self, client):
        assert client.get("/api/chat/leaderboard").json() == {
            "leaderboard": [], "total": 0, "limit": 10, "offset": 0,
        }

    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 101}, {"offset": -1}])
    def test_bad_paging(self, client, params):
        assert client.get("/api/chat/leaderboard", params=params).status_code == 422

    def test_store_down_is_503(self, client, ledger, monkeypatch):
        async def unavailable(limit=10, offset=0):
            raise LedgerUnavailableError("database unreachable")

        monkeypatch.setattr(ledger, "leaderboard", unavailable)

        resp = client.get("/api/chat/leaderboard")

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "TKL-LED-002"
        assert resp.json()["error"]["retryable"] is True

    def test_wallet_rank(self, client, store):
        store.insert_account("0x2", 0, 7, 14000)
        store.insert_account(WALLET, 0, 3, 6000)

        resp = client.post("/api/chat/leaderboard", json={"walletAddress": WALLET.upper().replace("0X", "0x")})

        assert resp.json() == {"rank": 2, "points": 3, "total_users": 2}

    def test_unknown_wallet_rank_is_null(self, client):
        resp = client.post("/api/chat/leaderboard", json={"walletAddress": WALLET})
        assert resp.json() == {"rank": None, "points": 0, "total_users": 0}

    @pytest.mark.parametrize("body", [{}, {"walletAddress": "  "}])
    def test_rank_needs_wallet(self, client, body):
        resp = client.post("/api/chat/leaderboard", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "TKL-API-006"


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["service"] == "tokenledger"
    assert body["ledger_mode"] == "durable"
