"""Custody backends for escrowed payments.

The escrow program never touches balances directly. It asks a PaymentBackend
to open a per-call escrow account, lock the payer's funds into it, and later
pay out of it. Amounts are integer minor units.

StubBackend accepts everything and only logs sends (unit tests).
SimBackend keeps real balances in SQLite and enforces them (dev + integration).
"""

import hashlib
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod

from protocol import InsufficientFunds

log = logging.getLogger("assured.ledger")


def escrow_address(call_id: str) -> str:
    """Deterministic escrow account address for a call (PDA-style)."""
    digest = hashlib.blake2b(b"call" + call_id.encode("utf-8"), digest_size=20).hexdigest()
    return f"escrow_{digest}"


class PaymentBackend(ABC):
    """Abstract custody backend. Injected into EscrowManager."""

    @abstractmethod
    def create_escrow_account(self, call_id: str) -> dict:
        """Create/derive the escrow account for a call. Returns {"account": ...}."""
        ...

    @abstractmethod
    def lock(self, call_id: str, from_account: str, amount: int) -> str:
        """Move *amount* from the payer's custody into the call's escrow account.
        Returns a tx ref. Raises InsufficientFunds."""
        ...

    @abstractmethod
    def send(self, call_id: str, to_account: str, amount: int) -> str:
        """Pay out of the call's escrow account. Returns a tx ref."""
        ...

    @abstractmethod
    def get_balance(self, call_id: str) -> int:
        """Balance held in escrow for a call."""
        ...

    @abstractmethod
    def account_balance(self, address: str) -> int:
        """Balance of any custodial account."""
        ...


class StubBackend(PaymentBackend):
    """No-op backend for testing. All operations succeed immediately."""

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.locks: list[dict] = []
        self.sends: list[dict] = []  # log of sends for test assertions

    def create_escrow_account(self, call_id: str) -> dict:
        account = escrow_address(call_id)
        self.accounts[call_id] = {"account": account, "balance": 0}
        return {"account": account}

    def lock(self, call_id: str, from_account: str, amount: int) -> str:
        self.locks.append({"call_id": call_id, "from": from_account, "amount": amount})
        entry = self.accounts.setdefault(call_id, {"account": escrow_address(call_id), "balance": 0})
        entry["balance"] += amount
        return f"stub_lock_{len(self.locks)}"

    def send(self, call_id: str, to_account: str, amount: int) -> str:
        self.sends.append({
            "call_id": call_id,
            "to": to_account,
            "amount": amount,
        })
        entry = self.accounts.get(call_id)
        if entry:
            entry["balance"] -= amount
        return f"stub_hash_{len(self.sends)}"

    def get_balance(self, call_id: str) -> int:
        return self.accounts.get(call_id, {}).get("balance", 0)

    def account_balance(self, address: str) -> int:
        return 0


class SimBackend(PaymentBackend):
    """Simulated custodial ledger for development/integration testing.

    Tracks real balances in SQLite. Enforces:
    - Insufficient balance errors on lock and send
    - Full transaction log with deterministic hashes

    Usage:
        sim = SimBackend()
        sim.fund("payer", 10_000)              # faucet into a custodial account
        sim.create_escrow_account("call1")
        sim.lock("call1", "payer", 1_000)      # payer -> escrow
        sim.send("call1", "provider", 1_000)   # escrow -> provider
    """

    def __init__(self, db_path: str = ":memory:"):
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._tx_counter = 0
        self._init_db()

    def _init_db(self):
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_accounts (
                address TEXT PRIMARY KEY,
                balance INTEGER NOT NULL DEFAULT 0
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL UNIQUE,
                from_account TEXT NOT NULL,
                to_account TEXT NOT NULL,
                amount INTEGER NOT NULL,
                call_id TEXT,
                tx_type TEXT NOT NULL,
                timestamp REAL NOT NULL
            )
        """)
        # Call -> escrow account mapping
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_escrows (
                call_id TEXT PRIMARY KEY,
                account TEXT NOT NULL
            )
        """)
        self._db.commit()

    def _get_balance(self, address: str) -> int:
        row = self._db.execute(
            "SELECT balance FROM sim_accounts WHERE address = ?",
            (address,),
        ).fetchone()
        return int(row["balance"]) if row else 0

    def _set_balance(self, address: str, amount: int):
        """Set balance, creating account if needed."""
        self._db.execute(
            "INSERT INTO sim_accounts (address, balance) VALUES (?, ?) "
            "ON CONFLICT(address) DO UPDATE SET balance = ?",
            (address, amount, amount),
        )

    def _record_tx(self, from_acc: str, to_acc: str, amount: int,
                   call_id: str, tx_type: str) -> str:
        """Record a transaction and return its hash."""
        self._tx_counter += 1
        tx_hash = hashlib.blake2b(
            f"{self._tx_counter}:{from_acc}:{to_acc}:{amount}".encode(),
            digest_size=32,
        ).hexdigest().upper()
        self._db.execute(
            "INSERT INTO sim_transactions (hash, from_account, to_account, "
            "amount, call_id, tx_type, timestamp) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (tx_hash, from_acc, to_acc, amount, call_id, tx_type, time.time()),
        )
        return tx_hash

    def _escrow_account(self, call_id: str) -> str | None:
        row = self._db.execute(
            "SELECT account FROM sim_escrows WHERE call_id = ?",
            (call_id,),
        ).fetchone()
        return row["account"] if row else None

    # --- PaymentBackend interface ---

    def create_escrow_account(self, call_id: str) -> dict:
        with self._lock:
            address = escrow_address(call_id)
            self._db.execute(
                "INSERT OR IGNORE INTO sim_escrows (call_id, account) VALUES (?, ?)",
                (call_id, address),
            )
            self._db.commit()
            return {"account": address}

    def lock(self, call_id: str, from_account: str, amount: int) -> str:
        with self._lock:
            escrow = self._escrow_account(call_id)
            if not escrow:
                raise ValueError(f"No escrow account for call {call_id}")
            balance = self._get_balance(from_account)
            if balance < amount:
                raise InsufficientFunds(
                    f"Insufficient balance: {from_account} has {balance}, needs {amount} (call {call_id})",
                    hint=f"fund {from_account} with at least {amount - balance} more minor units",
                )
            # Atomic transfer
            self._set_balance(from_account, balance - amount)
            self._set_balance(escrow, self._get_balance(escrow) + amount)
            tx_hash = self._record_tx(from_account, escrow, amount, call_id, "lock")
            self._db.commit()
            return tx_hash

    def send(self, call_id: str, to_account: str, amount: int) -> str:
        if amount == 0:
            return "noop_zero_amount"

        with self._lock:
            escrow = self._escrow_account(call_id)
            if not escrow:
                raise ValueError(f"No escrow account for call {call_id}")
            balance = self._get_balance(escrow)
            if balance < amount:
                raise InsufficientFunds(
                    f"Escrow account underfunded: have {balance}, need {amount} (call {call_id})",
                )
            self._set_balance(escrow, balance - amount)
            self._set_balance(to_account, self._get_balance(to_account) + amount)
            tx_hash = self._record_tx(escrow, to_account, amount, call_id, "send")
            self._db.commit()
            return tx_hash

    def get_balance(self, call_id: str) -> int:
        with self._lock:
            escrow = self._escrow_account(call_id)
            if not escrow:
                return 0
            return self._get_balance(escrow)

    def account_balance(self, address: str) -> int:
        with self._lock:
            return self._get_balance(address)

    # --- SimBackend-only methods (for test setup) ---

    def fund(self, address: str, amount: int):
        """Credit an account with funds (simulates external deposit)."""
        with self._lock:
            self._set_balance(address, self._get_balance(address) + amount)
            self._record_tx("faucet", address, amount, "", "fund")
            self._db.commit()
        log.info(f"Funded {address} with {amount}")

    def get_transactions(self, call_id: str = "") -> list[dict]:
        """Get transaction log, optionally filtered by call."""
        with self._lock:
            if call_id:
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions WHERE call_id = ? ORDER BY id",
                    (call_id,),
                ).fetchall()
            else:
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions ORDER BY id"
                ).fetchall()
            return [dict(r) for r in rows]

    def close(self):
        self._db.close()
