"""Settlement strategies.

The orchestrator drives every call through one SettlementBackend, chosen
once at startup from config:

- MockSettlement: no custody. Synthesizes tx refs and applies reputation
  outcomes itself. Used for demos and most tests.
- LedgerSettlement: every step goes through the EscrowManager, which moves
  funds through its PaymentBackend and applies reputation at settle.
"""

import hashlib
import logging
import threading
import time
from abc import ABC, abstractmethod

from protocol import DisputeKind, SettlementOutcome
from server.escrow import EscrowManager
from server.reputation import ReputationRepository, record_settlement_outcome

log = logging.getLogger("assured.settlement")


class SettlementBackend(ABC):
    """One settlement mode. Every method returns a tx ref (or resolution)."""

    mode: str = ""

    @abstractmethod
    def fulfill(self, call_id: str, service_id: str, response_hash: str,
                delivered_at: int, provider_sig: str) -> str:
        ...

    @abstractmethod
    def fulfill_partial(self, call_id: str, service_id: str, chunk_hash: str,
                        units: int, delivered_at: int, provider_sig: str) -> str:
        ...

    @abstractmethod
    def raise_dispute(self, call_id: str, service_id: str, kind: DisputeKind,
                      reason_hash: str) -> str:
        ...

    @abstractmethod
    def settle(self, call_id: str, service_id: str) -> dict:
        """Terminal step. Returns {"outcome", "txRef", "bondSlashed", ...}."""
        ...


def _mock_ref(*parts) -> str:
    digest = hashlib.blake2b(":".join(str(p) for p in parts).encode(), digest_size=16).hexdigest()
    return f"mock_{digest}"


class MockSettlement(SettlementBackend):
    """In-process settlement with no custody."""

    mode = "mock"

    def __init__(self, reputation: ReputationRepository, bond_slash_amount: int = 0):
        self.reputation = reputation
        self.bond_slash_amount = bond_slash_amount
        self._lock = threading.Lock()
        self._disputes: dict[str, list[str]] = {}
        self._settled: dict[str, dict] = {}

    def fulfill(self, call_id, service_id, response_hash, delivered_at, provider_sig):
        log.info(f"[mock] fulfill {call_id} hash={response_hash[:12]}")
        return _mock_ref("fulfill", call_id, response_hash, delivered_at)

    def fulfill_partial(self, call_id, service_id, chunk_hash, units, delivered_at, provider_sig):
        log.info(f"[mock] fulfill_partial {call_id} units={units}")
        return _mock_ref("partial", call_id, chunk_hash, delivered_at)

    def raise_dispute(self, call_id, service_id, kind, reason_hash):
        kind = DisputeKind(kind)
        with self._lock:
            self._disputes.setdefault(call_id, []).append(kind.value)
        log.info(f"[mock] dispute {call_id} {kind.value}")
        return _mock_ref("dispute", call_id, kind.value, reason_hash)

    def settle(self, call_id, service_id):
        with self._lock:
            if call_id in self._settled:
                return self._settled[call_id]
            kinds = self._disputes.get(call_id, [])
            refunded = bool(kinds)
            slashed = record_settlement_outcome(
                self.reputation, service_id,
                refunded=refunded, late=DisputeKind.LATE.value in kinds,
                slash_amount=self.bond_slash_amount if refunded else 0,
            )
            outcome = SettlementOutcome.REFUNDED if refunded else SettlementOutcome.RELEASED
            result = {
                "callId": call_id,
                "outcome": outcome.value,
                "txRef": _mock_ref("settle", call_id, outcome.value),
                "bondSlashed": slashed,
                "settledAt": int(time.time() * 1000),
            }
            self._settled[call_id] = result
        log.info(f"[mock] settle {call_id} {outcome.value}")
        return result


class LedgerSettlement(SettlementBackend):
    """Drives the escrow program. Provider is taken from the escrow record."""

    mode = "ledger"

    def __init__(self, escrow_mgr: EscrowManager):
        self.escrow = escrow_mgr

    def fulfill(self, call_id, service_id, response_hash, delivered_at, provider_sig):
        call = self.escrow.fulfill(call_id, response_hash, delivered_at, provider_sig)
        return f"fulfill:{call.call_id}:{call.delivered_ts}"

    def fulfill_partial(self, call_id, service_id, chunk_hash, units, delivered_at, provider_sig):
        call = self.escrow.fulfill_partial(call_id, chunk_hash, units, delivered_at, provider_sig)
        return f"partial:{call.call_id}:{call.units_released}"

    def raise_dispute(self, call_id, service_id, kind, reason_hash):
        call = self.escrow.raise_dispute(call_id, kind, reason_hash)
        return f"dispute:{call.call_id}:{len(call.evidence)}"

    def settle(self, call_id, service_id):
        resolution = self.escrow.settle(call_id)
        tx_refs = resolution.get("txRefs") or {}
        result = dict(resolution)
        result["txRef"] = tx_refs.get("provider_payout") or tx_refs.get("payer_refund") or ""
        return result


def build_settlement(config, reputation: ReputationRepository,
                     escrow_mgr: EscrowManager | None = None) -> SettlementBackend:
    """Pick the settlement mode once from config."""
    if config.ledger_backed:
        if escrow_mgr is None:
            raise ValueError("ledger settlement requires an EscrowManager")
        return LedgerSettlement(escrow_mgr)
    return MockSettlement(reputation, config.bond_slash_amount)
