"""Reputation, bond and latency registry for x402-assured.

SQLite-backed stats per service id. Counters only ever grow, except through
apply_decay. Bonds are provider-staked collateral that refund settlements
slash.
"""

import json
import logging
import math
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from protocol import (
    EWMA_ALPHA, LATENCY_WINDOW, P95_QUANTILE,
    InvalidTransition, Outcome,
)

log = logging.getLogger("assured.reputation")


@dataclass
class ServiceReputation:
    """Reputation data model for a service."""
    service_id: str
    ok: float = 0.0
    late: float = 0.0
    disputed: float = 0.0
    bond_balance: int = 0
    bond_owner: str = ""
    ewma_latency_ms: float | None = None
    p95_estimate_ms: float | None = None
    latency_sample_count: int = 0
    samples: list[float] = field(default_factory=list)

    @property
    def score(self) -> float:
        total = self.ok + self.late + self.disputed
        if total <= 0:
            return 1.0
        return self.ok / total

    @property
    def has_bond(self) -> bool:
        return self.bond_balance > 0

    def to_dict(self) -> dict:
        return {
            "serviceId": self.service_id,
            "ok": self.ok,
            "late": self.late,
            "disputed": self.disputed,
            "score": self.score,
            "bondBalance": self.bond_balance,
            "bondOwner": self.bond_owner or None,
            "hasBond": self.has_bond,
            "ewmaLatencyMs": self.ewma_latency_ms,
            "p95EstimateMs": self.p95_estimate_ms,
            "latencySampleCount": self.latency_sample_count,
        }


def nearest_rank_p95(samples: list[float]) -> float | None:
    if not samples:
        return None
    ordered = sorted(samples)
    rank = max(1, math.ceil(P95_QUANTILE * len(ordered)))
    return float(ordered[rank - 1])


class ReputationRepository(ABC):
    """Storage interface for service reputation. EscrowManager and the
    settlement strategies only talk to this."""

    @abstractmethod
    def get(self, service_id: str) -> ServiceReputation | None:
        ...

    @abstractmethod
    def upsert(self, rep: ServiceReputation) -> None:
        ...

    @abstractmethod
    def apply_weighted_outcome(self, service_id: str, outcome: Outcome, weight: float = 1.0) -> ServiceReputation:
        ...

    @abstractmethod
    def bond_slash(self, service_id: str, amount: int) -> int:
        ...


class ReputationManager(ReputationRepository):
    """SQLite-backed reputation registry."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS reputation (
                service_id TEXT PRIMARY KEY,
                ok REAL NOT NULL DEFAULT 0,
                late REAL NOT NULL DEFAULT 0,
                disputed REAL NOT NULL DEFAULT 0,
                bond_balance INTEGER NOT NULL DEFAULT 0,
                bond_owner TEXT NOT NULL DEFAULT '',
                ewma_latency_ms REAL,
                p95_estimate_ms REAL,
                latency_sample_count INTEGER NOT NULL DEFAULT 0,
                samples TEXT NOT NULL DEFAULT '[]'
            )
        """)
        self.db.commit()

    def _row_to_rep(self, row) -> ServiceReputation:
        return ServiceReputation(
            service_id=row["service_id"],
            ok=row["ok"],
            late=row["late"],
            disputed=row["disputed"],
            bond_balance=row["bond_balance"],
            bond_owner=row["bond_owner"],
            ewma_latency_ms=row["ewma_latency_ms"],
            p95_estimate_ms=row["p95_estimate_ms"],
            latency_sample_count=row["latency_sample_count"],
            samples=json.loads(row["samples"]),
        )

    def _load(self, service_id: str) -> ServiceReputation:
        row = self.db.execute(
            "SELECT * FROM reputation WHERE service_id = ?", (service_id,)
        ).fetchone()
        return self._row_to_rep(row) if row else ServiceReputation(service_id=service_id)

    def _save(self, rep: ServiceReputation):
        self.db.execute(
            "INSERT INTO reputation (service_id, ok, late, disputed, bond_balance, bond_owner, "
            "ewma_latency_ms, p95_estimate_ms, latency_sample_count, samples) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(service_id) DO UPDATE SET ok = excluded.ok, late = excluded.late, "
            "disputed = excluded.disputed, bond_balance = excluded.bond_balance, "
            "bond_owner = excluded.bond_owner, ewma_latency_ms = excluded.ewma_latency_ms, "
            "p95_estimate_ms = excluded.p95_estimate_ms, "
            "latency_sample_count = excluded.latency_sample_count, samples = excluded.samples",
            (rep.service_id, rep.ok, rep.late, rep.disputed, rep.bond_balance, rep.bond_owner,
             rep.ewma_latency_ms, rep.p95_estimate_ms, rep.latency_sample_count,
             json.dumps(rep.samples[-LATENCY_WINDOW:])),
        )
        self.db.commit()

    # --- ReputationRepository ---

    def get(self, service_id: str) -> ServiceReputation | None:
        """Stats for a service, or None if it has never been seen."""
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM reputation WHERE service_id = ?", (service_id,)
            ).fetchone()
            return self._row_to_rep(row) if row else None

    def upsert(self, rep: ServiceReputation) -> None:
        if rep.bond_balance < 0:
            raise InvalidTransition("bond balance cannot be negative")
        with self._lock:
            self._save(rep)

    def apply_weighted_outcome(self, service_id: str, outcome: Outcome, weight: float = 1.0) -> ServiceReputation:
        outcome = Outcome(outcome)
        weight = min(1.0, max(0.0, float(weight)))
        with self._lock:
            rep = self._load(service_id)
            if outcome == Outcome.OK:
                rep.ok += weight
            elif outcome == Outcome.LATE:
                rep.late += weight
            else:
                rep.disputed += weight
            self._save(rep)
        log.info(f"{service_id}: {outcome.value} +{weight} (score {rep.score:.3f})")
        return rep

    def update_weighted(self, service_id: str, outcome: Outcome, weight: float = 1.0) -> ServiceReputation:
        return self.apply_weighted_outcome(service_id, outcome, weight)

    # --- Bonds ---

    def bond_deposit(self, service_id: str, amount: int, owner: str) -> ServiceReputation:
        """Stake collateral. The first deposit fixes the bond owner."""
        if amount <= 0:
            raise InvalidTransition("bond deposit must be positive")
        if not owner:
            raise InvalidTransition("bond owner required")
        with self._lock:
            rep = self._load(service_id)
            if rep.bond_owner and rep.bond_owner != owner:
                raise InvalidTransition(f"bond for {service_id} is owned by {rep.bond_owner}")
            rep.bond_owner = owner
            rep.bond_balance += int(amount)
            self._save(rep)
        log.info(f"{service_id}: bond deposit {amount} by {owner} (balance {rep.bond_balance})")
        return rep

    def bond_withdraw(self, service_id: str, amount: int, owner: str) -> ServiceReputation:
        if amount <= 0:
            raise InvalidTransition("bond withdrawal must be positive")
        with self._lock:
            rep = self._load(service_id)
            if rep.bond_owner != owner:
                raise InvalidTransition(f"only the bond owner may withdraw from {service_id}")
            if rep.bond_balance < amount:
                raise InvalidTransition(
                    f"withdrawal of {amount} exceeds bond balance {rep.bond_balance}"
                )
            rep.bond_balance -= int(amount)
            self._save(rep)
        log.info(f"{service_id}: bond withdraw {amount} (balance {rep.bond_balance})")
        return rep

    def bond_slash(self, service_id: str, amount: int) -> int:
        """Slash up to *amount* from the bond. Returns what was actually slashed."""
        with self._lock:
            rep = self._load(service_id)
            slashed = min(rep.bond_balance, max(0, int(amount)))
            rep.bond_balance -= slashed
            self._save(rep)
        if slashed:
            log.info(f"{service_id}: bond slashed {slashed} (balance {rep.bond_balance})")
        return slashed

    # --- Latency ---

    def update_latency(self, service_id: str, sample_ms: float) -> ServiceReputation:
        """Fold a latency sample into the EWMA and the p95 window."""
        sample = float(sample_ms)
        if sample < 0 or not math.isfinite(sample):
            raise ValueError(f"invalid latency sample: {sample_ms}")
        with self._lock:
            rep = self._load(service_id)
            if rep.ewma_latency_ms is None:
                rep.ewma_latency_ms = sample
            else:
                rep.ewma_latency_ms = EWMA_ALPHA * sample + (1 - EWMA_ALPHA) * rep.ewma_latency_ms
            rep.samples = (rep.samples + [sample])[-LATENCY_WINDOW:]
            rep.p95_estimate_ms = nearest_rank_p95(rep.samples)
            rep.latency_sample_count += 1
            self._save(rep)
        return rep

    # --- Maintenance ---

    def apply_decay(self, service_id: str, factor: float) -> ServiceReputation:
        if not 0 < factor <= 1:
            raise ValueError(f"decay factor must be in (0, 1], got {factor}")
        with self._lock:
            rep = self._load(service_id)
            rep.ok *= factor
            rep.late *= factor
            rep.disputed *= factor
            self._save(rep)
        return rep

    def list_services(self) -> list[ServiceReputation]:
        with self._lock:
            rows = self.db.execute("SELECT * FROM reputation ORDER BY service_id").fetchall()
            return [self._row_to_rep(r) for r in rows]

    def close(self):
        self.db.close()


def record_settlement_outcome(reputation: ReputationRepository, service_id: str,
                              refunded: bool, late: bool = False,
                              slash_amount: int = 0) -> int:
    """Apply the terminal reputation outcome of one call. Returns bond slashed.

    Release counts as OK. Refund counts as DISPUTED, plus LATE when the
    dispute carried LATE evidence, and slashes the bond.
    """
    if not refunded:
        reputation.apply_weighted_outcome(service_id, Outcome.OK)
        return 0
    reputation.apply_weighted_outcome(service_id, Outcome.DISPUTED)
    if late:
        reputation.apply_weighted_outcome(service_id, Outcome.LATE)
    return reputation.bond_slash(service_id, slash_amount)
