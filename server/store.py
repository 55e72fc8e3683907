"""Call transcript storage for x402-assured.

SQLite-backed off-ledger mirror of every paid call, keyed by call id.
Transcripts are created on the first paid retry, mutated by each later
step of the same call and never deleted.

Also holds PendingRequirements, the per-service FIFO of issued 402
requirements that the first paid retry consumes as its timing baseline.
"""

import json
import sqlite3
import threading
import time
from collections import deque
from typing import Callable

MAX_PENDING_PER_SERVICE = 1000


class TranscriptStore:
    """SQLite-backed call transcripts."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS calls (
                call_id TEXT PRIMARY KEY,
                service_id TEXT NOT NULL,
                outcome TEXT,
                transcript TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_calls_created ON calls(created_at)")
        self.db.commit()

    def get_or_create(self, call_id: str, service_id: str,
                      factory: Callable[[], dict]) -> tuple[dict, bool]:
        """Return (transcript, created). *factory* builds the initial document."""
        with self._lock:
            row = self.db.execute(
                "SELECT transcript FROM calls WHERE call_id = ?", (call_id,)
            ).fetchone()
            if row:
                return json.loads(row["transcript"]), False
            transcript = factory()
            transcript["callId"] = call_id
            transcript["serviceId"] = service_id
            now = time.time()
            self.db.execute(
                "INSERT INTO calls (call_id, service_id, outcome, transcript, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (call_id, service_id, transcript.get("outcome"), json.dumps(transcript), now, now),
            )
            self.db.commit()
            return transcript, True

    def get(self, call_id: str) -> dict | None:
        row = self.db.execute("SELECT transcript FROM calls WHERE call_id = ?", (call_id,)).fetchone()
        if not row:
            return None
        return json.loads(row["transcript"])

    def mutate(self, call_id: str, fn: Callable[[dict], None]) -> dict | None:
        """Atomically apply *fn* to a transcript in place and persist it."""
        with self._lock:
            row = self.db.execute(
                "SELECT transcript FROM calls WHERE call_id = ?", (call_id,)
            ).fetchone()
            if not row:
                return None
            transcript = json.loads(row["transcript"])
            fn(transcript)
            self.db.execute(
                "UPDATE calls SET transcript = ?, outcome = ?, updated_at = ? WHERE call_id = ?",
                (json.dumps(transcript), transcript.get("outcome"), time.time(), call_id),
            )
            self.db.commit()
            return transcript

    def recent(self, limit: int = 50) -> list[dict]:
        """Most recent transcripts first."""
        rows = self.db.execute(
            "SELECT transcript FROM calls ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [json.loads(r["transcript"]) for r in rows]

    def count(self, outcome: str | None = None) -> int:
        if outcome is None:
            return self.db.execute("SELECT COUNT(*) FROM calls").fetchone()[0]
        return self.db.execute(
            "SELECT COUNT(*) FROM calls WHERE outcome = ?", (outcome,)
        ).fetchone()[0]

    def close(self):
        self.db.close()


class PendingRequirements:
    """Per-service FIFO of issued requirements. Sole owner of the queues."""

    def __init__(self, max_per_service: int = MAX_PENDING_PER_SERVICE):
        self._queues: dict[str, deque] = {}
        self._max = max_per_service
        self._lock = threading.Lock()

    def push(self, service_id: str, requirement: dict, issued_at_ms: int) -> None:
        with self._lock:
            queue = self._queues.setdefault(service_id, deque(maxlen=self._max))
            queue.append((issued_at_ms, requirement))

    def pop_oldest(self, service_id: str) -> tuple[int, dict] | None:
        """Consume the oldest pending requirement, or None if none is queued."""
        with self._lock:
            queue = self._queues.get(service_id)
            if not queue:
                return None
            return queue.popleft()

    def withdraw(self, service_id: str, requirement: dict) -> bool:
        """Drop a specific requirement that will never be paid for."""
        with self._lock:
            queue = self._queues.get(service_id)
            if not queue:
                return False
            for entry in queue:
                if entry[1] is requirement:
                    queue.remove(entry)
                    return True
            return False

    def size(self, service_id: str) -> int:
        with self._lock:
            return len(self._queues.get(service_id, ()))
