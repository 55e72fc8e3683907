"""Server configuration for x402-assured.

One AssuredConfig is built at startup and passed everywhere else.
Precedence: explicit keyword > environment (ASSURED_*) > default.
Each setting has exactly one environment variable.
"""

import os
from dataclasses import dataclass, fields, replace

from protocol import (
    ConfigError, DisputeBoundary,
    DEFAULT_PRICE, DEFAULT_CURRENCY, DEFAULT_NETWORK, DEFAULT_RECIPIENT,
    DEFAULT_ESCROW_PROGRAM, DEFAULT_REPUTATION_PROGRAM, DEFAULT_PRICE_DECIMALS,
    DEFAULT_GOOD_SLA_MS, DEFAULT_BAD_SLA_MS, DEFAULT_STREAM_SLA_MS,
    DEFAULT_DISPUTE_WINDOW_S, DEFAULT_BAD_OVERSHOOT_MS, DEFAULT_STREAM_CHUNK_DELAY_MS,
    DEFAULT_BOND_SLASH, DEFAULT_LEDGER_ATTEMPTS, DEFAULT_RUN_RATE_PER_SECOND,
    DEFAULT_MIN_CUSTODIAL_BALANCE, DEFAULT_RECENT_CALLS,
)

SETTLEMENT_MODES = ("mock", "ledger")

_ENV_PREFIX = "ASSURED_"


@dataclass(frozen=True)
class AssuredConfig:
    price: str = DEFAULT_PRICE
    currency: str = DEFAULT_CURRENCY
    network: str = DEFAULT_NETWORK
    recipient: str = DEFAULT_RECIPIENT
    price_decimals: int = DEFAULT_PRICE_DECIMALS
    escrow_program_id: str = DEFAULT_ESCROW_PROGRAM
    reputation_program_id: str = DEFAULT_REPUTATION_PROGRAM
    alt_service: str = "http://localhost:3000/api/good_mirror"
    mirrors: tuple[str, ...] = ("http://localhost:3000/api/good_mirror",)

    good_sla_ms: int = DEFAULT_GOOD_SLA_MS
    bad_sla_ms: int = DEFAULT_BAD_SLA_MS
    stream_sla_ms: int = DEFAULT_STREAM_SLA_MS
    dispute_window_s: int = DEFAULT_DISPUTE_WINDOW_S
    dispute_boundary: DisputeBoundary = DisputeBoundary.INCLUSIVE

    good_service_id: str = "demo:good"
    bad_service_id: str = "demo:bad"
    stream_service_id: str = "demo:stream"

    webhook_secret: str = ""
    settlement_mode: str = "mock"
    provider_key_path: str = ""
    operator_account: str = "operator"
    db_path: str = ":memory:"
    host: str = "0.0.0.0"
    port: int = 3000

    stream_chunk_delay_ms: int = DEFAULT_STREAM_CHUNK_DELAY_MS
    bad_overshoot_ms: int = DEFAULT_BAD_OVERSHOOT_MS
    bond_slash_amount: int = DEFAULT_BOND_SLASH
    ledger_attempts: int = DEFAULT_LEDGER_ATTEMPTS
    run_rate_per_second: int = DEFAULT_RUN_RATE_PER_SECOND
    min_custodial_balance: int = DEFAULT_MIN_CUSTODIAL_BALANCE
    recent_calls_limit: int = DEFAULT_RECENT_CALLS

    def __post_init__(self):
        self.validate()

    def validate(self):
        if self.settlement_mode not in SETTLEMENT_MODES:
            raise ConfigError(f"settlement_mode must be one of {SETTLEMENT_MODES}, got {self.settlement_mode!r}")
        for name in ("good_sla_ms", "bad_sla_ms", "stream_sla_ms", "dispute_window_s",
                     "ledger_attempts", "run_rate_per_second", "recent_calls_limit"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1")
        for name in ("stream_chunk_delay_ms", "bad_overshoot_ms", "bond_slash_amount",
                     "min_custodial_balance", "price_decimals"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0")
        if not 0 < self.port < 65536:
            raise ConfigError(f"port out of range: {self.port}")
        if len(self.recipient) < 32:
            raise ConfigError("recipient must be a full ledger address (>= 32 chars)")
        try:
            float(self.price)
        except ValueError:
            raise ConfigError(f"price is not a number: {self.price!r}")

    # --- service kinds ---

    def service_id(self, kind: str) -> str:
        if kind in ("good", "good_mirror"):
            return self.good_service_id
        if kind == "bad":
            return self.bad_service_id
        if kind == "stream":
            return self.stream_service_id
        raise ConfigError(f"Unknown service kind: {kind}")

    def sla_ms(self, kind: str) -> int:
        if kind in ("good", "good_mirror"):
            return self.good_sla_ms
        if kind == "bad":
            return self.bad_sla_ms
        if kind == "stream":
            return self.stream_sla_ms
        raise ConfigError(f"Unknown service kind: {kind}")

    @property
    def ledger_backed(self) -> bool:
        return self.settlement_mode == "ledger"

    @classmethod
    def from_env(cls, environ: dict | None = None, **overrides) -> "AssuredConfig":
        """Build config from ASSURED_* env vars. Keyword overrides win."""
        env = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = env.get(_ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, f.type, raw)
        values.update(overrides)
        return cls(**values)

    def with_overrides(self, **overrides) -> "AssuredConfig":
        return replace(self, **overrides)


def _coerce(name: str, typ, raw: str):
    typ = typ if isinstance(typ, str) else getattr(typ, "__name__", str(typ))
    try:
        if typ == "int":
            return int(raw)
        if typ == "DisputeBoundary":
            return DisputeBoundary(raw.lower())
        if typ.startswith("tuple"):
            return tuple(u.strip() for u in raw.split(",") if u.strip())
    except ValueError:
        raise ConfigError(f"Invalid value for {_ENV_PREFIX}{name.upper()}: {raw!r}")
    if name == "provider_key_path":
        return os.path.expanduser(raw)
    return raw
