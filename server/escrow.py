"""Escrow state machine for x402-assured.

One record per paid call: lock the payer's funds, record delivery (whole or
chunked), accept disputes inside the window, and settle exactly once.
PaymentBackend (Sim or stub) handles actual fund movement.

Funds only leave escrow custody in the Settled transition. If a payout
fails, the call is NOT marked settled -- completed transfers are remembered
so a later settle resumes instead of paying twice.
"""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field

from protocol import (
    DEFAULT_BOND_SLASH, MAX_PROVIDER_SIG_LEN, STATE_TRANSITIONS,
    CallStatus, DisputeBoundary, DisputeKind, SettlementOutcome,
    InfrastructureError, InvalidTransition, LedgerUnavailable,
)
from server.ledger import PaymentBackend, StubBackend
from server.reputation import ReputationRepository, record_settlement_outcome

log = logging.getLogger("assured.escrow")


def current_ms() -> int:
    return int(time.time() * 1000)


def amount_for_units(amount: int, total_units: int, units: int) -> int:
    """Value of the first *units* of a call split into *total_units*.

    Even split, the remainder goes one minor unit at a time to the leading
    units, so releasing every unit always sums to *amount*.
    """
    total_units = max(1, total_units)
    units = max(0, min(units, total_units))
    base, remainder = divmod(amount, total_units)
    return base * units + min(units, remainder)


@dataclass
class EscrowCall:
    """Escrow record for a single paid call."""
    call_id: str
    service_id: str
    payer: str
    provider: str
    amount: int
    start_ts: int
    sla_ms: int
    dispute_window_s: int
    status: CallStatus = CallStatus.INITIALIZED
    total_units: int = 1
    units_released: int = 0
    delivered_ts: int | None = None
    response_hash: str | None = None
    provider_signature: str | None = None
    disputed: bool = False
    evidence: list[dict] = field(default_factory=list)
    escrow_account: str = ""
    lock_tx: str = ""
    resolution: dict | None = None

    @property
    def has_late_evidence(self) -> bool:
        return any(e.get("kind") == DisputeKind.LATE.value for e in self.evidence)

    def to_dict(self) -> dict:
        return {
            "callId": self.call_id,
            "serviceId": self.service_id,
            "payer": self.payer,
            "provider": self.provider,
            "amount": self.amount,
            "startTs": self.start_ts,
            "slaMs": self.sla_ms,
            "disputeWindowS": self.dispute_window_s,
            "status": self.status.value,
            "totalUnits": self.total_units,
            "unitsReleased": self.units_released,
            "deliveredTs": self.delivered_ts,
            "responseHash": self.response_hash,
            "providerSignature": self.provider_signature,
            "disputed": self.disputed,
            "evidence": self.evidence,
            "escrowAccount": self.escrow_account,
            "resolution": self.resolution,
        }


class EscrowManager:
    """SQLite-backed escrow program with pluggable payment backend."""

    def __init__(self, db_path: str = ":memory:", payment_backend: PaymentBackend | None = None,
                 reputation: ReputationRepository | None = None,
                 bond_slash_amount: int = DEFAULT_BOND_SLASH,
                 dispute_boundary: DisputeBoundary = DisputeBoundary.INCLUSIVE):
        self.payment = payment_backend or StubBackend()
        self.reputation = reputation
        self.bond_slash_amount = bond_slash_amount
        self.dispute_boundary = DisputeBoundary(dispute_boundary)
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS escrow_calls (
                call_id TEXT PRIMARY KEY,
                service_id TEXT NOT NULL,
                payer TEXT NOT NULL,
                provider TEXT NOT NULL,
                amount INTEGER NOT NULL,
                start_ts INTEGER NOT NULL,
                sla_ms INTEGER NOT NULL,
                dispute_window_s INTEGER NOT NULL,
                status TEXT NOT NULL,
                total_units INTEGER NOT NULL DEFAULT 1,
                units_released INTEGER NOT NULL DEFAULT 0,
                delivered_ts INTEGER,
                response_hash TEXT,
                provider_signature TEXT,
                disputed INTEGER NOT NULL DEFAULT 0,
                evidence TEXT NOT NULL DEFAULT '[]',
                escrow_account TEXT NOT NULL DEFAULT '',
                lock_tx TEXT NOT NULL DEFAULT '',
                transfers TEXT NOT NULL DEFAULT '{}',
                resolution TEXT
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS escrow_chunks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                call_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                chunk_hash TEXT NOT NULL,
                units INTEGER NOT NULL,
                units_released INTEGER NOT NULL,
                ts INTEGER NOT NULL,
                provider_sig TEXT NOT NULL DEFAULT '',
                UNIQUE(call_id, seq)
            )
        """)
        self.db.commit()

    # --- helpers ---

    def _row_to_call(self, row) -> EscrowCall:
        return EscrowCall(
            call_id=row["call_id"],
            service_id=row["service_id"],
            payer=row["payer"],
            provider=row["provider"],
            amount=row["amount"],
            start_ts=row["start_ts"],
            sla_ms=row["sla_ms"],
            dispute_window_s=row["dispute_window_s"],
            status=CallStatus(row["status"]),
            total_units=row["total_units"],
            units_released=row["units_released"],
            delivered_ts=row["delivered_ts"],
            response_hash=row["response_hash"],
            provider_signature=row["provider_signature"],
            disputed=bool(row["disputed"]),
            evidence=json.loads(row["evidence"]),
            escrow_account=row["escrow_account"],
            lock_tx=row["lock_tx"],
            resolution=json.loads(row["resolution"]) if row["resolution"] else None,
        )

    def _require(self, call_id: str):
        row = self.db.execute("SELECT * FROM escrow_calls WHERE call_id = ?", (call_id,)).fetchone()
        if not row:
            raise InvalidTransition(f"No escrow for call {call_id}")
        return row

    @staticmethod
    def _check_transition(call: EscrowCall, new_status: CallStatus):
        if new_status not in STATE_TRANSITIONS[call.status]:
            raise InvalidTransition(
                f"Invalid transition {call.status.value} -> {new_status.value} for {call.call_id}"
            )

    @staticmethod
    def _check_provider(call: EscrowCall, provider: str | None, provider_sig: str):
        if provider is not None and provider != call.provider:
            raise InvalidTransition(f"{provider} is not the provider for {call.call_id}")
        if len((provider_sig or "").encode("utf-8")) > MAX_PROVIDER_SIG_LEN:
            raise InvalidTransition(f"provider signature exceeds {MAX_PROVIDER_SIG_LEN} bytes")

    def _window_open(self, call: EscrowCall, now: int) -> bool:
        """True while a dispute against the recorded delivery is still accepted."""
        if call.delivered_ts is None:
            return False
        elapsed = now - call.delivered_ts
        window = call.dispute_window_s * 1000
        if self.dispute_boundary == DisputeBoundary.INCLUSIVE:
            return elapsed <= window
        return elapsed < window

    # --- operations ---

    def init_payment(self, call_id: str, service_id: str, amount: int, sla_ms: int,
                     dispute_window_s: int, total_units: int = 1, payer: str = "",
                     provider: str = "", now_ms: int | None = None) -> EscrowCall:
        """Create an Initialized record and lock *amount* from the payer into escrow."""
        if amount <= 0:
            raise InvalidTransition(f"amount must be positive, got {amount}")
        if sla_ms < 1 or dispute_window_s < 1:
            raise InvalidTransition("slaMs and disputeWindowS must be >= 1")
        start = current_ms() if now_ms is None else int(now_ms)
        with self._lock:
            exists = self.db.execute(
                "SELECT 1 FROM escrow_calls WHERE call_id = ?", (call_id,)
            ).fetchone()
            if exists:
                raise InvalidTransition(f"Escrow for call {call_id} already exists")

            account_info = self.payment.create_escrow_account(call_id)
            escrow_account = account_info.get("account", "")
            # Raises InsufficientFunds before any record exists
            lock_tx = self.payment.lock(call_id, payer, amount)

            call = EscrowCall(
                call_id=call_id, service_id=service_id, payer=payer, provider=provider,
                amount=int(amount), start_ts=start, sla_ms=int(sla_ms),
                dispute_window_s=int(dispute_window_s), total_units=max(1, int(total_units)),
                escrow_account=escrow_account, lock_tx=lock_tx,
            )
            self.db.execute(
                "INSERT INTO escrow_calls (call_id, service_id, payer, provider, amount, start_ts, "
                "sla_ms, dispute_window_s, status, total_units, escrow_account, lock_tx) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (call.call_id, call.service_id, call.payer, call.provider, call.amount,
                 call.start_ts, call.sla_ms, call.dispute_window_s, call.status.value,
                 call.total_units, call.escrow_account, call.lock_tx),
            )
            self.db.commit()
        log.info(f"{call_id}: initialized, {amount} locked from {payer} ({lock_tx})")
        return call

    def fulfill(self, call_id: str, response_hash: str, delivered_at: int,
                provider_sig: str = "", provider: str | None = None) -> EscrowCall:
        """Record a complete delivery. Only valid from Initialized."""
        with self._lock:
            call = self._row_to_call(self._require(call_id))
            if call.status != CallStatus.INITIALIZED:
                raise InvalidTransition(f"Cannot fulfill {call_id} in status {call.status.value}")
            self._check_provider(call, provider, provider_sig)
            self._check_transition(call, CallStatus.FULFILLED)
            call.status = CallStatus.FULFILLED
            call.response_hash = response_hash
            call.delivered_ts = int(delivered_at)
            call.provider_signature = provider_sig
            call.units_released = call.total_units
            self.db.execute(
                "UPDATE escrow_calls SET status = ?, response_hash = ?, delivered_ts = ?, "
                "provider_signature = ?, units_released = ? WHERE call_id = ?",
                (call.status.value, call.response_hash, call.delivered_ts,
                 call.provider_signature, call.units_released, call_id),
            )
            self.db.commit()
        log.info(f"{call_id}: fulfilled at {delivered_at}")
        return call

    def fulfill_partial(self, call_id: str, chunk_hash: str, units: int, delivered_at: int,
                        provider_sig: str = "", provider: str | None = None) -> EscrowCall:
        """Record delivery of *units* more units. Moves to Fulfilled on the last one."""
        if units <= 0:
            raise InvalidTransition(f"units must be positive, got {units}")
        with self._lock:
            call = self._row_to_call(self._require(call_id))
            if call.status not in (CallStatus.INITIALIZED, CallStatus.PARTIALLY_FULFILLED):
                raise InvalidTransition(
                    f"Cannot release units for {call_id} in status {call.status.value}"
                )
            self._check_provider(call, provider, provider_sig)
            released = call.units_released + units
            if released > call.total_units:
                raise InvalidTransition(
                    f"{call_id}: releasing {units} would exceed {call.total_units} total units"
                )
            new_status = (CallStatus.FULFILLED if released == call.total_units
                          else CallStatus.PARTIALLY_FULFILLED)
            self._check_transition(call, new_status)

            seq = self.db.execute(
                "SELECT COUNT(*) FROM escrow_chunks WHERE call_id = ?", (call_id,)
            ).fetchone()[0] + 1
            call.status = new_status
            call.units_released = released
            call.delivered_ts = int(delivered_at)
            call.response_hash = chunk_hash
            call.provider_signature = provider_sig
            self.db.execute(
                "INSERT INTO escrow_chunks (call_id, seq, chunk_hash, units, units_released, ts, provider_sig) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (call_id, seq, chunk_hash, units, released, call.delivered_ts, provider_sig),
            )
            self.db.execute(
                "UPDATE escrow_calls SET status = ?, units_released = ?, delivered_ts = ?, "
                "response_hash = ?, provider_signature = ? WHERE call_id = ?",
                (call.status.value, call.units_released, call.delivered_ts,
                 call.response_hash, call.provider_signature, call_id),
            )
            self.db.commit()
        log.info(f"{call_id}: chunk {seq} released {released}/{call.total_units} units")
        return call

    def raise_dispute(self, call_id: str, kind: DisputeKind, reason_hash: str,
                      reporter_sig: str = "", reporter: str | None = None,
                      now_ms: int | None = None) -> EscrowCall:
        """Attach evidence and move the call to Disputed."""
        kind = DisputeKind(kind)
        now = current_ms() if now_ms is None else int(now_ms)
        with self._lock:
            call = self._row_to_call(self._require(call_id))
            if call.status == CallStatus.SETTLED:
                raise InvalidTransition(f"{call_id} is already settled")
            if reporter is not None and reporter != call.payer:
                raise InvalidTransition(f"Only the payer may dispute {call_id}")
            if call.delivered_ts is not None:
                if not self._window_open(call, now):
                    raise InvalidTransition(f"Dispute window closed for {call_id}")
                if kind == DisputeKind.LATE and call.delivered_ts - call.start_ts < call.sla_ms:
                    raise InvalidTransition(f"{call_id} was delivered within its SLA")
            self._check_transition(call, CallStatus.DISPUTED)

            entry = {"kind": kind.value, "detail": reason_hash, "at": now}
            if reporter_sig:
                entry["reporterSig"] = reporter_sig
            call.evidence.append(entry)
            call.disputed = True
            call.status = CallStatus.DISPUTED
            self.db.execute(
                "UPDATE escrow_calls SET status = ?, disputed = 1, evidence = ? WHERE call_id = ?",
                (call.status.value, json.dumps(call.evidence), call_id),
            )
            self.db.commit()
        log.info(f"{call_id}: disputed ({kind.value})")
        return call

    def settle(self, call_id: str, now_ms: int | None = None) -> dict:
        """Terminal transition. Moves funds, applies reputation, returns the outcome.

        Idempotent: settling a Settled call returns the stored resolution.
        """
        now = current_ms() if now_ms is None else int(now_ms)
        with self._lock:
            row = self._require(call_id)
            call = self._row_to_call(row)

            # Double-settlement guard
            if call.status == CallStatus.SETTLED:
                return call.resolution

            if call.status == CallStatus.INITIALIZED:
                raise InvalidTransition(f"Cannot settle {call_id}: nothing delivered or disputed")
            immediate = call.status == CallStatus.FULFILLED and not call.disputed
            if not immediate and self._window_open(call, now):
                raise InvalidTransition(f"Dispute window still open for {call_id}")
            self._check_transition(call, CallStatus.SETTLED)

            if call.disputed:
                outcome = SettlementOutcome.REFUNDED
                released = 0
            else:
                outcome = SettlementOutcome.RELEASED
                released = amount_for_units(call.amount, call.total_units, call.units_released)
            refunded = call.amount - released

            pending = []
            if released > 0:
                pending.append(("provider_payout", call.provider, released))
            if refunded > 0:
                pending.append(("payer_refund", call.payer, refunded))

            # Transfers completed on an earlier failed attempt are not repeated
            transfers = json.loads(row["transfers"])
            try:
                for label, to_account, amount in pending:
                    if label in transfers:
                        continue
                    transfers[label] = self.payment.send(call_id, to_account, amount)
            except Exception as e:
                log.warning(f"{call_id}: settlement transfer failed, left {call.status.value}: {e}")
                if isinstance(e, InfrastructureError):
                    raise
                raise LedgerUnavailable(
                    f"Settlement transfer failed for {call_id}: {e}",
                    hint="the call stays open; settle again once the ledger recovers",
                ) from e
            finally:
                # Completed payouts are persisted whatever happens after them
                self.db.execute(
                    "UPDATE escrow_calls SET transfers = ? WHERE call_id = ?",
                    (json.dumps(transfers), call_id),
                )
                self.db.commit()

            slashed = 0
            if self.reputation is not None:
                slashed = record_settlement_outcome(
                    self.reputation, call.service_id,
                    refunded=call.disputed, late=call.has_late_evidence,
                    slash_amount=self.bond_slash_amount if call.disputed else 0,
                )

            resolution = {
                "callId": call_id,
                "outcome": outcome.value,
                "releasedToProvider": released,
                "refundedToPayer": refunded,
                "bondSlashed": slashed,
                "txRefs": transfers,
                "settledAt": now,
            }
            self.db.execute(
                "UPDATE escrow_calls SET status = ?, transfers = ?, resolution = ? WHERE call_id = ?",
                (CallStatus.SETTLED.value, json.dumps(transfers), json.dumps(resolution), call_id),
            )
            self.db.commit()
        log.info(f"{call_id}: settled {outcome.value} (provider {released}, payer {refunded})")
        return resolution

    # --- reads ---

    def get(self, call_id: str) -> EscrowCall | None:
        with self._lock:
            row = self.db.execute("SELECT * FROM escrow_calls WHERE call_id = ?", (call_id,)).fetchone()
            return self._row_to_call(row) if row else None

    def chunks(self, call_id: str) -> list[dict]:
        """Auditable chunk records for a call, in release order."""
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM escrow_chunks WHERE call_id = ? ORDER BY seq", (call_id,)
            ).fetchall()
        return [
            {
                "seq": r["seq"],
                "chunkHash": r["chunk_hash"],
                "units": r["units"],
                "unitsReleased": r["units_released"],
                "ts": r["ts"],
                "providerSig": r["provider_sig"],
            }
            for r in rows
        ]

    def close(self):
        self.db.close()


