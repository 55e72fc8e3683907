"""Shared constants and interfaces for the x402-assured protocol.

All modules import from here to avoid circular dependencies.
"""

from decimal import Decimal, InvalidOperation
from enum import Enum

# --- Protocol Constants ---

PROTOCOL_VERSION = 1

DEFAULT_PRICE = "0.001"
DEFAULT_CURRENCY = "USDC"
DEFAULT_NETWORK = "solana-devnet"
DEFAULT_RECIPIENT = "CTdyT6ZctmsuPhkJrfcvQgAe95uPS45aXErGLKAhAZAA"
DEFAULT_ESCROW_PROGRAM = "6zpAcx4Yo9MmDf4w8pBGez8bm47zyKuyjr5Y5QkC3ayL"
DEFAULT_REPUTATION_PROGRAM = "8QFXHzWC1hDC7GQTNqBhsVRLURpYfXFBzT5Vb4NTxDh5"
DEFAULT_PRICE_DECIMALS = 9  # minor units per whole unit = 10**9
SIG_ALG = "ed25519"

# SLA / dispute defaults
DEFAULT_GOOD_SLA_MS = 2000
DEFAULT_BAD_SLA_MS = 1000
DEFAULT_STREAM_SLA_MS = 5000
DEFAULT_DISPUTE_WINDOW_S = 10
DEFAULT_BAD_OVERSHOOT_MS = 1000
DEFAULT_STREAM_CHUNK_DELAY_MS = 250

# Bond slashed from the provider on every refund settlement (minor units).
# Fixed, not proportional to call value.
DEFAULT_BOND_SLASH = 100_000

# Escrow limits
MAX_PROVIDER_SIG_LEN = 128  # bytes

# Latency estimators
EWMA_ALPHA = 0.2
LATENCY_WINDOW = 100  # samples kept for the p95 estimate
P95_QUANTILE = 0.95

# Settlement orchestration
DEFAULT_LEDGER_ATTEMPTS = 2  # per request, no background retry
DEFAULT_RUN_RATE_PER_SECOND = 3
DEFAULT_MIN_CUSTODIAL_BALANCE = 10_000_000
DEFAULT_RECENT_CALLS = 50

# Wire headers
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
WEBHOOK_SIGNATURE_HEADER = "X-Assured-Signature"

# Canonical message prefixes (trust layer)
TRACE_PREFIX = "assured-trace"
MIRROR_PREFIX = "assured-mirror"

# Streamed service content, released one unit per chunk in this order
STREAM_CHUNKS = (
    "chunk-1: warming up the model",
    "chunk-2: partial result",
    "chunk-3: final answer",
)

# Demo service kinds served by the provider
SERVICE_KINDS = ("good", "bad", "stream", "good_mirror")


# --- Errors ---

class AssuredError(Exception):
    """Base for all protocol-level errors."""


class ProtocolError(AssuredError, ValueError):
    """Malformed/missing payment proof or requirement schema violation.
    Rejected immediately, no state mutated."""


class InvalidTransition(AssuredError, ValueError):
    """Escrow or reputation state transition that the ledger rejects.
    The record is left unchanged."""


class PolicyViolation(AssuredError):
    """Client-side refusal to pay. `clause` names the violated policy field."""

    def __init__(self, clause: str, message: str):
        super().__init__(message)
        self.clause = clause


class InfrastructureError(AssuredError):
    """Recoverable failure outside the protocol (ledger down, low balance).
    Safe to retry the whole request."""

    def __init__(self, message: str, hint: str = ""):
        super().__init__(message)
        self.hint = hint


class LedgerUnavailable(InfrastructureError):
    pass


class InsufficientFunds(InfrastructureError):
    pass


class ConfigError(AssuredError, ValueError):
    pass


class WebhookSignatureError(AssuredError):
    """Settlement webhook HMAC did not match the configured secret."""


# --- State Machine ---

class CallStatus(Enum):
    INITIALIZED = "initialized"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"
    DISPUTED = "disputed"
    SETTLED = "settled"


# Valid state transitions: current_state -> set of valid next states
STATE_TRANSITIONS = {
    CallStatus.INITIALIZED: {
        CallStatus.PARTIALLY_FULFILLED,
        CallStatus.FULFILLED,
        CallStatus.DISPUTED,
    },
    CallStatus.PARTIALLY_FULFILLED: {
        CallStatus.PARTIALLY_FULFILLED,
        CallStatus.FULFILLED,
        CallStatus.DISPUTED,
        CallStatus.SETTLED,
    },
    CallStatus.FULFILLED: {CallStatus.DISPUTED, CallStatus.SETTLED},
    CallStatus.DISPUTED: {CallStatus.DISPUTED, CallStatus.SETTLED},
    CallStatus.SETTLED: set(),
}


class DisputeKind(Enum):
    LATE = "LATE"
    NO_RESPONSE = "NO_RESPONSE"
    BAD_PROOF = "BAD_PROOF"
    MISMATCH_HASH = "MISMATCH_HASH"


class DisputeBoundary(Enum):
    """Whether a dispute raised exactly at the end of the window is accepted."""
    INCLUSIVE = "inclusive"
    EXCLUSIVE = "exclusive"


class Outcome(Enum):
    """Reputation outcome, applied once per terminal call."""
    OK = "ok"
    LATE = "late"
    DISPUTED = "disputed"


class SettlementOutcome(Enum):
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


# --- Amounts ---

def to_minor_units(price: str | Decimal, decimals: int = DEFAULT_PRICE_DECIMALS) -> int:
    """Convert a decimal price string to integer minor units."""
    try:
        value = Decimal(str(price).strip())
    except InvalidOperation:
        raise ProtocolError(f"Invalid price format: {price}")
    if not value.is_finite() or value < 0:
        raise ProtocolError(f"Invalid price format: {price}")
    return int((value * (10 ** decimals)).to_integral_value())


def from_minor_units(amount: int, decimals: int = DEFAULT_PRICE_DECIMALS) -> Decimal:
    return Decimal(amount) / (10 ** decimals)
