# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for an x402-assured provider (FastAPI).

Paid endpoints answer an unpaid probe with 402 and a payment requirement,
and a retry carrying X-PAYMENT with the delivered payload plus an
X-PAYMENT-RESPONSE settlement header.

Read models (summary, call transcripts, reputation) and the operator
"run a flow" action sit alongside them.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import AssuredConfig
from crypto import (
    generate_ed25519_keypair, load_ed25519_key, save_ed25519_key,
)
from policy import Policy, balanced
from protocol import (
    PAYMENT_HEADER, SERVICE_KINDS, WEBHOOK_SIGNATURE_HEADER,
    InsufficientFunds, InvalidTransition, LedgerUnavailable, PolicyViolation,
    ProtocolError, WebhookSignatureError,
)
from server.escrow import EscrowManager
from server.ledger import PaymentBackend, SimBackend
from server.orchestrator import SettlementOrchestrator
from server.ratelimit import FixedWindowLimiter
from server.reputation import ReputationManager
from server.settlement import SettlementBackend, build_settlement
from server.store import TranscriptStore

log = logging.getLogger("assured.app")


# --- Request models ---

class RunRequest(BaseModel):
    type: str
    policy: Optional[dict] = None


def _load_provider_key(config: AssuredConfig) -> bytes:
    """Provider signing key from config.provider_key_path, generated if missing."""
    path = config.provider_key_path
    if path and os.path.exists(path):
        return load_ed25519_key(path)
    privkey, _ = generate_ed25519_keypair()
    if path:
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            save_ed25519_key(path, privkey)
            log.info(f"Generated provider key at {path}")
        except OSError as e:
            log.warning(f"Could not persist provider key to {path}: {e}")
    return privkey


def _error(status: int, error: str, detail: str = "", **extra) -> JSONResponse:
    body = {"ok": False, "error": error}
    if detail:
        body["detail"] = detail
    body.update(extra)
    return JSONResponse(status_code=status, content=body)


# --- App factory ---

def create_app(
    config: AssuredConfig | None = None,
    escrow_mgr: EscrowManager | None = None,
    reputation: ReputationManager | None = None,
    store: TranscriptStore | None = None,
    settlement: SettlementBackend | None = None,
    provider_privkey: bytes | None = None,
    payment_backend: PaymentBackend | None = None,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Anything not injected is built from *config*. Ledger mode builds an
    EscrowManager over a SimBackend unless one is provided.
    """
    cfg = config or AssuredConfig()
    app = FastAPI(title="x402-assured provider", version="1.0")

    _reputation = reputation or ReputationManager(cfg.db_path)
    _escrow = escrow_mgr
    if _escrow is None and cfg.ledger_backed:
        _escrow = EscrowManager(
            cfg.db_path,
            payment_backend or SimBackend(cfg.db_path),
            reputation=_reputation,
            bond_slash_amount=cfg.bond_slash_amount,
            dispute_boundary=cfg.dispute_boundary,
        )
    _settlement = settlement or build_settlement(cfg, _reputation, _escrow)
    _store = store or TranscriptStore(cfg.db_path)
    _privkey = provider_privkey or _load_provider_key(cfg)

    _orchestrator = SettlementOrchestrator(
        cfg, _settlement, _reputation, store=_store,
        provider_privkey=_privkey, escrow_mgr=_escrow,
    )
    _run_limiter = FixedWindowLimiter(cfg.run_rate_per_second, 1.0)

    log.info(f"Settlement mode: {_settlement.mode}")

    # Expose for testing
    app.state.config = cfg
    app.state.escrow = _escrow
    app.state.reputation = _reputation
    app.state.store = _store
    app.state.settlement = _settlement
    app.state.orchestrator = _orchestrator
    app.state.run_limiter = _run_limiter
    app.state.provider_privkey = _privkey

    # --- Paid services ---

    @app.get("/api/{kind}")
    async def paid_service(kind: str, request: Request):
        if kind not in SERVICE_KINDS:
            raise HTTPException(404, f"Unknown service: {kind}")
        header = request.headers.get(PAYMENT_HEADER)
        if header is None:
            return JSONResponse(status_code=402, content=_orchestrator.issue_requirement(kind))
        try:
            delivery = await _orchestrator.deliver(kind, header)
        except ProtocolError as e:
            # Bad proof: same body as an unpaid probe, but nothing is queued
            content = _orchestrator.build_requirement(kind).to_wire()
            content["error"] = str(e)
            return JSONResponse(status_code=402, content=content)
        except LedgerUnavailable as e:
            log.error(f"Settlement failed for {kind}: {e}")
            return _error(502, "FULFILL_FAILED", str(e), hint=e.hint)
        except InvalidTransition as e:
            return _error(409, "INVALID_TRANSITION", str(e))
        return JSONResponse(status_code=delivery.status_code, content=delivery.body,
                            headers=delivery.headers)

    @app.post("/webhook/settlement")
    async def settlement_webhook(request: Request):
        raw = await request.body()
        try:
            return _orchestrator.record_webhook(raw, request.headers.get(WEBHOOK_SIGNATURE_HEADER))
        except WebhookSignatureError:
            return _error(401, "INVALID_SIGNATURE")
        except ProtocolError as e:
            return _error(400, "INVALID_BODY", str(e))

    # --- Read models ---

    @app.get("/server_pubkey")
    async def server_pubkey():
        return {"pubkey": _orchestrator.provider_pubkey_hex, "sigAlg": "ed25519"}

    @app.get("/summary")
    async def summary():
        return _orchestrator.summary()

    @app.get("/calls/{call_id}")
    async def get_call(call_id: str):
        transcript = _orchestrator.transcript(call_id)
        if transcript is None:
            raise HTTPException(404, "Call not found")
        return transcript

    @app.get("/calls/{call_id}/escrow")
    async def get_call_escrow(call_id: str):
        if _escrow is None:
            raise HTTPException(404, "No escrow in mock settlement mode")
        call = _escrow.get(call_id)
        if call is None:
            raise HTTPException(404, "Escrow not found")
        return {**call.to_dict(), "chunks": _escrow.chunks(call_id)}

    @app.get("/reputation/{service_id}")
    async def get_reputation(service_id: str):
        return _orchestrator.reputation_view(service_id)

    # --- Operator ---

    @app.post("/run")
    async def run(req: RunRequest):
        if not _run_limiter.acquire():
            retry_after = round(_run_limiter.retry_after(), 3)
            return _error(429, "RATE_LIMITED", f"at most {cfg.run_rate_per_second} runs per second",
                          retryAfter=retry_after)
        policy: Policy | None = None
        if req.policy:
            policy = Policy.from_dict(req.policy, base=balanced())
        try:
            return await _orchestrator.run_flow(req.type, policy)
        except PolicyViolation as e:
            return _error(403, "POLICY_VIOLATION", str(e), clause=e.clause)
        except InsufficientFunds as e:
            return _error(409, "INSUFFICIENT_BALANCE", str(e), hint=e.hint)
        except LedgerUnavailable as e:
            return _error(502, "FULFILL_FAILED", str(e), hint=e.hint)
        except InvalidTransition as e:
            return _error(409, "INVALID_TRANSITION", str(e))
        except ProtocolError as e:
            return _error(400, "BAD_REQUEST", str(e))

    return app
