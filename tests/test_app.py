"""Tests for the provider HTTP API (server/app.py).

Covers: 402 probes, paid retries for every service kind, bad proofs,
settlement webhooks, read models, and the rate-limited /run action.
"""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import json

import pytest
from starlette.testclient import TestClient

from client import MockFacilitator
from crypto import hmac_sign, verify_trace
from schemas import decode_header, encode_header, parse_requirement
from server.app import create_app
from server.ledger import SimBackend
from server.reputation import ReputationManager
from server.settlement import MockSettlement
from conftest import PAYER, PRICE, PROVIDER, PROVIDER_PRIVKEY, PROVIDER_PUBKEY, fast_config


@pytest.fixture
def app():
    return create_app(fast_config(webhook_secret="s3cret"), provider_privkey=PROVIDER_PRIVKEY)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def ledger_backend():
    backend = SimBackend()
    backend.fund(PAYER, 100 * PRICE)
    return backend


@pytest.fixture
def ledger_client(ledger_backend):
    config = fast_config(settlement_mode="ledger", operator_account=PAYER)
    return TestClient(create_app(config, provider_privkey=PROVIDER_PRIVKEY,
                                 payment_backend=ledger_backend))


def _probe(client, kind):
    resp = client.get(f"/api/{kind}")
    assert resp.status_code == 402
    return parse_requirement(resp.json())


def _paid_get(client, kind):
    proof = MockFacilitator().pay(_probe(client, kind))
    resp = client.get(f"/api/{kind}", headers={"X-PAYMENT": proof.header_value})
    return proof, resp


# --- 402 ---

class TestProbe:
    def test_unpaid_good_returns_requirement(self, client):
        resp = client.get("/api/good")
        assert resp.status_code == 402
        body = resp.json()
        assert body["price"] == "0.001"
        assert body["extension"]["serviceId"] == "demo:good"
        assert body["extension"]["sigAlg"] == "ed25519"
        assert body["extension"]["mirrors"][0]["sig"]

    def test_unpaid_stream(self, client):
        ext = client.get("/api/stream").json()["extension"]
        assert ext["stream"] is True
        assert ext["totalUnits"] == 3

    def test_unknown_kind(self, client):
        assert client.get("/api/ugly").status_code == 404

    def test_bad_payment_header_reissues_requirement(self, client):
        resp = client.get("/api/good", headers={"X-PAYMENT": "not-base64!"})
        assert resp.status_code == 402
        body = resp.json()
        assert "error" in body
        assert body["extension"]["serviceId"] == "demo:good"

    def test_bad_payment_header_queues_nothing(self, app, client):
        pending = app.state.orchestrator.pending
        client.get("/api/good", headers={"X-PAYMENT": "not-base64!"})
        assert pending.size("demo:good") == 0
        client.get("/api/good")
        assert pending.size("demo:good") == 1

    def test_receipt_without_call_id(self, client):
        resp = client.get("/api/good", headers={"X-PAYMENT": encode_header({"txRef": "x"})})
        assert resp.status_code == 402
        assert "callId" in resp.json()["error"]


# --- Paid retries ---

class TestPaidRetry:
    def test_good(self, client):
        proof, resp = _paid_get(client, "good")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "data": {"hello": "world"}}
        settlement = decode_header(resp.headers["X-PAYMENT-RESPONSE"])
        assert settlement["callId"] == proof.call_id
        assert settlement["mode"] == "mock"

        call = client.get(f"/calls/{proof.call_id}").json()
        assert call["outcome"] == "RELEASED"
        trace = call["trace"]
        pubkey = client.get("/server_pubkey").json()["pubkey"]
        assert verify_trace(proof.call_id, trace["responseHash"], trace["deliveredAt"],
                            trace["signature"], pubkey)

    def test_good_mirror(self, client):
        _, resp = _paid_get(client, "good_mirror")
        assert resp.status_code == 200
        assert resp.json()["mirror"] is True

    def test_bad(self, client):
        proof, resp = _paid_get(client, "bad")
        assert resp.status_code == 503
        body = resp.json()
        assert body["error"] == "SLA_MISSED"
        assert body["outcome"] == "REFUNDED"
        assert body["evidence"][0]["kind"] == "LATE"
        rep = client.get("/reputation/demo:bad").json()
        assert rep["disputed"] == 1
        assert rep["late"] == 1

    def test_stream(self, client):
        proof, resp = _paid_get(client, "stream")
        assert resp.status_code == 200
        body = resp.json()
        assert body["callId"] == proof.call_id
        assert len(body["timeline"]) == 3
        call = client.get(f"/calls/{proof.call_id}").json()
        assert call["stream"]["unitsReleased"] == 3

    def test_settle_failure_is_502(self):
        rep = ReputationManager()

        class DownSettlement(MockSettlement):
            def settle(self, call_id, service_id):
                raise ConnectionError("ledger down")

        app = create_app(fast_config(), reputation=rep, settlement=DownSettlement(rep),
                         provider_privkey=PROVIDER_PRIVKEY)
        proof, resp = _paid_get(TestClient(app), "good")
        assert resp.status_code == 502
        assert resp.json()["error"] == "FULFILL_FAILED"
        assert resp.json()["hint"]
        assert app.state.store.get(proof.call_id)["outcome"] is None


# --- Webhook ---

class TestWebhook:
    def test_valid(self, client):
        proof, _ = _paid_get(client, "good")
        raw = json.dumps({"callId": proof.call_id, "event": "settled"}).encode()
        resp = client.post("/webhook/settlement", content=raw,
                           headers={"X-Assured-Signature": hmac_sign(b"s3cret", raw)})
        assert resp.status_code == 200
        assert resp.json()["verified"] is True
        assert resp.json()["matched"] is True
        assert client.get(f"/calls/{proof.call_id}").json()["webhookVerified"] is True

    def test_bad_signature(self, client):
        raw = b'{"callId": "x"}'
        resp = client.post("/webhook/settlement", content=raw,
                           headers={"X-Assured-Signature": "00" * 32})
        assert resp.status_code == 401
        assert resp.json()["error"] == "INVALID_SIGNATURE"

    def test_not_json(self, client):
        raw = b"settled!"
        resp = client.post("/webhook/settlement", content=raw,
                           headers={"X-Assured-Signature": hmac_sign(b"s3cret", raw)})
        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_BODY"


# --- Read models ---

class TestReadModels:
    def test_server_pubkey(self, client):
        body = client.get("/server_pubkey").json()
        assert body == {"pubkey": PROVIDER_PUBKEY.hex(), "sigAlg": "ed25519"}

    def test_missing_call(self, client):
        assert client.get("/calls/nope").status_code == 404

    def test_escrow_view_in_mock_mode(self, client):
        assert client.get("/calls/nope/escrow").status_code == 404

    def test_unseen_reputation(self, client):
        body = client.get("/reputation/demo:nobody").json()
        assert body["seen"] is False
        assert body["score"] == 1.0

    def test_summary(self, client):
        _paid_get(client, "good")
        body = client.get("/summary").json()
        assert [s["serviceId"] for s in body["services"]][:3] == ["demo:good", "demo:bad", "demo:stream"]
        assert body["recent"][0]["outcome"] == "RELEASED"


# --- /run ---

class TestRun:
    def test_good(self, client):
        resp = client.post("/run", json={"type": "good"})
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "RELEASED"
        assert resp.json()["httpStatus"] == 200

    def test_fallback(self, client):
        resp = client.post("/run", json={"type": "fallback"})
        assert resp.status_code == 200
        assert resp.json()["fallback"]["clause"] == "max_price"

    def test_unknown_flow(self, client):
        resp = client.post("/run", json={"type": "ugly"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "BAD_REQUEST"

    def test_policy_violation(self, client):
        resp = client.post("/run", json={"type": "good", "policy": {"maxPrice": 0.0001}})
        assert resp.status_code == 403
        assert resp.json()["error"] == "POLICY_VIOLATION"
        assert resp.json()["clause"] == "max_price"

    def test_rate_limited(self):
        client = TestClient(create_app(fast_config(run_rate_per_second=1),
                                       provider_privkey=PROVIDER_PRIVKEY))
        assert client.post("/run", json={"type": "good"}).status_code == 200
        resp = client.post("/run", json={"type": "good"})
        assert resp.status_code == 429
        assert resp.json()["error"] == "RATE_LIMITED"
        assert 0 <= resp.json()["retryAfter"] <= 1

    def test_insufficient_operator_balance(self):
        config = fast_config(settlement_mode="ledger", operator_account="empty")
        client = TestClient(create_app(config, provider_privkey=PROVIDER_PRIVKEY,
                                       payment_backend=SimBackend()))
        resp = client.post("/run", json={"type": "good"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "INSUFFICIENT_BALANCE"
        assert "fund empty" in resp.json()["hint"]


# --- Ledger mode ---

class TestLedgerMode:
    def test_run_good_moves_funds(self, ledger_client, ledger_backend):
        body = ledger_client.post("/run", json={"type": "good"}).json()
        assert body["settlementMode"] == "ledger"
        assert body["outcome"] == "RELEASED"
        assert ledger_backend.account_balance(PROVIDER) == PRICE
        escrow = ledger_client.get(f"/calls/{body['callId']}/escrow").json()
        assert escrow["status"] == "settled"
        assert escrow["resolution"]["releasedToProvider"] == PRICE

    def test_run_stream_records_chunks(self, ledger_client):
        body = ledger_client.post("/run", json={"type": "stream"}).json()
        escrow = ledger_client.get(f"/calls/{body['callId']}/escrow").json()
        assert [c["seq"] for c in escrow["chunks"]] == [1, 2, 3]

    def test_run_bad_refunds(self, ledger_client, ledger_backend):
        body = ledger_client.post("/run", json={"type": "bad"}).json()
        assert body["outcome"] == "REFUNDED"
        assert ledger_backend.account_balance(PAYER) == 100 * PRICE

    def test_paid_retry_without_escrow_is_409(self, ledger_client):
        header = encode_header({"callId": "demo:good:never:locked"})
        resp = ledger_client.get("/api/good", headers={"X-PAYMENT": header})
        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_TRANSITION"
