"""Client-side payment policy for x402-assured.

A Policy is checked against a 402 payment requirement before any money
moves. It fails closed: any violated clause raises PolicyViolation and the
client never pays.

Reputation and latency come from a reader, so the same policy works against
the local registry, a provider's /reputation endpoint, or fixed test values.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace

from protocol import PolicyViolation
from schemas import PaymentRequirement


@dataclass(frozen=True)
class Policy:
    min_reputation: float = 0.6
    max_price: float = 0.05
    require_sla: bool = True
    sla_p95_max_ms: float | None = None

    def merged(self, **overrides) -> "Policy":
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_dict(cls, data: dict | None, base: "Policy | None" = None) -> "Policy":
        """Build from a wire dict (camelCase or snake_case keys) on top of *base*."""
        data = data or {}
        base = base or balanced()
        return base.merged(
            min_reputation=data.get("minReputation", data.get("min_reputation")),
            max_price=data.get("maxPrice", data.get("max_price")),
            require_sla=data.get("requireSLA", data.get("require_sla")),
            sla_p95_max_ms=data.get("slaP95MaxMs", data.get("sla_p95_max_ms")),
        )

    def to_dict(self) -> dict:
        return {
            "minReputation": self.min_reputation,
            "maxPrice": self.max_price,
            "requireSLA": self.require_sla,
            "slaP95MaxMs": self.sla_p95_max_ms,
        }


def strict() -> Policy:
    return Policy(min_reputation=0.8, max_price=0.02, require_sla=True)


def balanced() -> Policy:
    return Policy(min_reputation=0.6, max_price=0.05, require_sla=True)


def cheap() -> Policy:
    return Policy(min_reputation=0.4, max_price=0.01, require_sla=False)


PRESETS = {
    "strict": strict,
    "balanced": balanced,
    "cheap": cheap,
}


def preset(name: str) -> Policy:
    try:
        return PRESETS[name]()
    except KeyError:
        raise ValueError(f"Unknown policy preset: {name}")


# --- Reputation readers ---

class ReputationReader(ABC):
    """Where a policy gets score and latency data from."""

    @abstractmethod
    async def score(self, service_id: str) -> float | None:
        """Reputation score, or None for a service with no record."""
        ...

    @abstractmethod
    async def p95(self, service_id: str) -> float | None:
        """P95 latency estimate in ms, or None if there is none yet."""
        ...


class RegistryReader(ReputationReader):
    """Reads a local ReputationRepository."""

    def __init__(self, repository):
        self.repository = repository

    async def score(self, service_id):
        rep = self.repository.get(service_id)
        return rep.score if rep else None

    async def p95(self, service_id):
        rep = self.repository.get(service_id)
        return rep.p95_estimate_ms if rep else None


class HTTPRegistryReader(ReputationReader):
    """Reads GET /reputation/{service_id} through a client Transport."""

    def __init__(self, transport, base_url: str = ""):
        self.transport = transport
        self.base_url = base_url.rstrip("/")
        self._cache: dict[str, dict | None] = {}

    async def _fetch(self, service_id: str) -> dict | None:
        if service_id not in self._cache:
            resp = await self.transport.get(f"{self.base_url}/reputation/{service_id}")
            if resp.status_code == 404:
                self._cache[service_id] = None
            else:
                resp.raise_for_status()
                self._cache[service_id] = resp.json()
        return self._cache[service_id]

    async def score(self, service_id):
        data = await self._fetch(service_id)
        if not data or not data.get("seen", True):
            return None
        return data.get("score")

    async def p95(self, service_id):
        data = await self._fetch(service_id)
        return data.get("p95EstimateMs") if data else None


class StaticReader(ReputationReader):
    """Fixed values, for tests and offline use."""

    def __init__(self, scores: dict | None = None, p95s: dict | None = None):
        self.scores = scores or {}
        self.p95s = p95s or {}

    async def score(self, service_id):
        return self.scores.get(service_id)

    async def p95(self, service_id):
        return self.p95s.get(service_id)


# --- Enforcement ---

async def enforce_policy(requirement: PaymentRequirement, policy: Policy,
                         reader: ReputationReader | None = None) -> None:
    """Raise PolicyViolation on the first violated clause. Order:
    max_price, require_sla, min_reputation, sla_p95_max_ms."""
    ext = requirement.extension
    try:
        price = float(requirement.price)
    except (TypeError, ValueError):
        price = math.nan
    if not math.isfinite(price):
        raise PolicyViolation("max_price", f"Invalid price in payment requirement: {requirement.price}")
    if price > policy.max_price:
        raise PolicyViolation(
            "max_price", f"Quoted price {price} exceeds policy maximum {policy.max_price}"
        )

    if policy.require_sla and (not ext.sla_ms or ext.sla_ms <= 0):
        raise PolicyViolation("require_sla", "Policy requires SLA but server did not advertise one")

    if policy.min_reputation > 0:
        score = await reader.score(ext.service_id) if reader else None
        # Unseen services start at full trust
        if score is None:
            score = 1.0
        if score < policy.min_reputation:
            raise PolicyViolation(
                "min_reputation",
                f"Service reputation {score:.2f} below required minimum {policy.min_reputation}",
            )

    if policy.sla_p95_max_ms is not None and policy.sla_p95_max_ms > 0:
        p95 = await reader.p95(ext.service_id) if reader else None
        if p95 is not None and p95 > policy.sla_p95_max_ms:
            raise PolicyViolation(
                "sla_p95_max_ms",
                f"Service p95 latency {p95}ms exceeds policy maximum {policy.sla_p95_max_ms}ms",
            )
