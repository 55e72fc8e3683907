"""Paying client for x402-assured services.

Thin HTTP client with a pluggable transport interface.
Default transport: HTTP via httpx.

fetch() probes a URL, validates the 402 requirement, enforces the local
policy, pays through a facilitator and retries with the X-PAYMENT proof.
run_conformance() walks the same path and reports each step as a named
check instead of raising.
"""

import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

import httpx

from crypto import generate_call_id, verify_mirror, verify_trace
from policy import HTTPRegistryReader, Policy, ReputationReader, balanced, enforce_policy
from protocol import (
    DEFAULT_PRICE_DECIMALS, PAYMENT_HEADER, PAYMENT_RESPONSE_HEADER,
    ProtocolError, to_minor_units,
)
from schemas import MirrorAd, PaymentRequirement, decode_header, encode_header, parse_requirement

log = logging.getLogger("assured.client")

EVENTS = ("partial_release", "final_settle")


class Transport(ABC):
    """Override this to talk to a provider some other way."""

    @abstractmethod
    async def get(self, url: str, headers: dict | None = None) -> httpx.Response:
        ...

    @abstractmethod
    async def post(self, url: str, data: dict) -> httpx.Response:
        ...


class HTTPTransport(Transport):
    """Default. Plain HTTP. Pass *client* to reuse one AsyncClient (or an ASGI app in tests)."""

    def __init__(self, base_url: str = "", client: httpx.AsyncClient | None = None,
                 timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout

    def _url(self, url: str) -> str:
        if url.startswith("http://") or url.startswith("https://"):
            return url
        return f"{self.base_url}{url}"

    async def get(self, url: str, headers: dict | None = None) -> httpx.Response:
        if self.client is not None:
            return await self.client.get(self._url(url), headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.get(self._url(url), headers=headers, timeout=self.timeout)

    async def post(self, url: str, data: dict) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(self._url(url), json=data, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(self._url(url), json=data, timeout=self.timeout)


# --- Facilitators ---

@dataclass
class PaymentProof:
    call_id: str
    tx_ref: str
    header_value: str


class Facilitator(ABC):
    """Turns a payment requirement into a proof of payment."""

    name: str = ""

    @abstractmethod
    def pay(self, requirement: PaymentRequirement) -> PaymentProof:
        ...


class MockFacilitator(Facilitator):
    """Synthesizes receipts. Nothing is locked anywhere."""

    name = "mock"

    def __init__(self):
        self.last_proof: PaymentProof | None = None

    def pay(self, requirement):
        call_id = generate_call_id(requirement.extension.service_id)
        tx_ref = f"mock_tx_{secrets.token_hex(8)}"
        header = encode_header({
            "callId": call_id,
            "txRef": tx_ref,
            "facilitator": self.name,
            "ts": int(time.time() * 1000),
        })
        self.last_proof = PaymentProof(call_id, tx_ref, header)
        return self.last_proof


class LedgerFacilitator(Facilitator):
    """Locks the price in escrow from *payer*'s custodial account."""

    name = "ledger"

    def __init__(self, escrow_mgr, payer: str, price_decimals: int = DEFAULT_PRICE_DECIMALS):
        self.escrow = escrow_mgr
        self.payer = payer
        self.price_decimals = price_decimals
        self.last_proof: PaymentProof | None = None

    def pay(self, requirement):
        ext = requirement.extension
        call_id = generate_call_id(ext.service_id)
        call = self.escrow.init_payment(
            call_id,
            ext.service_id,
            to_minor_units(requirement.price, self.price_decimals),
            ext.sla_ms,
            ext.dispute_window_s,
            total_units=ext.total_units or 1,
            payer=self.payer,
            provider=requirement.recipient,
        )
        header = encode_header({
            "callId": call_id,
            "txRef": call.lock_tx,
            "facilitator": self.name,
            "ts": call.start_ts,
        })
        self.last_proof = PaymentProof(call_id, call.lock_tx, header)
        return self.last_proof


# --- Helpers ---

def origin_of(url: str) -> str:
    parsed = httpx.URL(url)
    port = f":{parsed.port}" if parsed.port else ""
    return f"{parsed.scheme}://{parsed.host}{port}"


def verify_mirrors(requirement: PaymentRequirement, signer_pubkey_hex: str) -> list[MirrorAd]:
    """Mirrors whose signature verifies against the provider's key."""
    ext = requirement.extension
    return [
        m for m in (ext.mirrors or [])
        if verify_mirror(ext.service_id, m.url, m.sig, signer_pubkey_hex)
    ]


class AssuredClient:
    """High-level paying client."""

    def __init__(self, transport: Transport | None = None, facilitator: Facilitator | None = None,
                 policy: Policy | None = None, reader: ReputationReader | None = None,
                 base_url: str = ""):
        self.transport = transport or HTTPTransport(base_url)
        self.facilitator = facilitator or MockFacilitator()
        self.policy = policy or balanced()
        self.reader = reader
        self.last_requirement: PaymentRequirement | None = None
        self.last_proof: PaymentProof | None = None
        self.last_settlement: dict | None = None
        self._listeners: dict[str, list[Callable]] = {e: [] for e in EVENTS}

    # --- events ---

    def on(self, event: str, handler: Callable[[dict], None]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown event: {event}")
        self._listeners[event].append(handler)

    def off(self, event: str, handler: Callable[[dict], None]) -> None:
        if handler in self._listeners.get(event, []):
            self._listeners[event].remove(handler)

    def _emit(self, event: str, payload: dict) -> None:
        for handler in list(self._listeners[event]):
            try:
                handler(payload)
            except Exception as e:
                log.error(f"Error in {event} handler: {e}")

    # --- fetch ---

    def _resolve_policy(self, override) -> Policy:
        if override is None:
            return self.policy
        if isinstance(override, Policy):
            return override
        return Policy.from_dict(override, base=self.policy)

    def _reader_for(self, url: str) -> ReputationReader:
        if self.reader is not None:
            return self.reader
        return HTTPRegistryReader(self.transport, origin_of(url) if "://" in url else "")

    async def fetch(self, url: str, policy_override: Policy | dict | None = None) -> httpx.Response:
        """Probe, check policy, pay, retry. Non-402 responses come back untouched.

        Raises ProtocolError for a malformed requirement and PolicyViolation
        when the policy refuses to pay.
        """
        policy = self._resolve_policy(policy_override)
        first = await self.transport.get(url)
        if first.status_code != 402:
            return first

        try:
            body = first.json()
        except ValueError:
            raise ProtocolError("402 response body is not JSON")
        requirement = parse_requirement(body)
        self.last_requirement = requirement
        await enforce_policy(requirement, policy, self._reader_for(url))

        proof = self.facilitator.pay(requirement)
        self.last_proof = proof
        log.info(f"Paid {requirement.price} {requirement.currency} for {proof.call_id}")

        resp = await self.transport.get(url, headers={PAYMENT_HEADER: proof.header_value})
        settlement = decode_header(resp.headers.get(PAYMENT_RESPONSE_HEADER))
        self.last_settlement = settlement
        self._emit_progress(resp, requirement, proof)
        return resp

    def _emit_progress(self, resp: httpx.Response, requirement: PaymentRequirement,
                       proof: PaymentProof) -> None:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        timeline = body.get("timeline") if isinstance(body, dict) else None
        total = requirement.extension.total_units or len(timeline or []) or 1
        for entry in timeline or []:
            self._emit("partial_release", {
                "callId": proof.call_id,
                "index": entry.get("index"),
                "totalUnits": total,
            })
        if self.last_settlement:
            self._emit("final_settle", {
                "callId": proof.call_id,
                "mode": self.last_settlement.get("mode"),
                "responseHash": self.last_settlement.get("responseHash"),
            })


# --- Conformance ---

def _check(passed: bool, detail: str | None = None) -> dict:
    return {"passed": bool(passed), "detail": detail}


CHECK_NAMES = (
    "has402", "validSchema", "hasExtension", "acceptsRetry", "returns200",
    "settlesWithinSLA", "traceSaved", "traceValid", "mirrorSigValid",
)


async def run_conformance(client: AssuredClient, url: str) -> dict:
    """Walk one paid call against *url* and report every protocol check.

    Never raises on a failing provider. Returns {ok, checks, receipt, paymentResponse}.
    """
    checks = {name: _check(False, "not reached") for name in CHECK_NAMES}
    result = {"ok": False, "checks": checks, "receipt": None, "paymentResponse": None}
    base = origin_of(url) if "://" in url else ""
    transport = client.transport

    try:
        started = int(time.time() * 1000)
        probe = await transport.get(url)
        checks["has402"] = _check(probe.status_code == 402, f"status {probe.status_code}")
        if probe.status_code != 402:
            return result

        try:
            body = probe.json()
        except ValueError:
            body = None
        has_ext = isinstance(body, dict) and isinstance(body.get("extension"), dict)
        checks["hasExtension"] = _check(has_ext, None if has_ext else "missing extension")
        try:
            requirement = parse_requirement(body)
            checks["validSchema"] = _check(True)
        except ProtocolError as e:
            checks["validSchema"] = _check(False, str(e))
            return result

        proof = client.facilitator.pay(requirement)
        result["receipt"] = {
            "callId": proof.call_id,
            "txRef": proof.tx_ref,
            "headerValue": proof.header_value,
        }
        paid = await transport.get(url, headers={PAYMENT_HEADER: proof.header_value})
        accepted = paid.status_code not in (400, 402)
        checks["acceptsRetry"] = _check(accepted, f"status {paid.status_code}")
        checks["returns200"] = _check(paid.status_code == 200, f"status {paid.status_code}")

        raw_header = paid.headers.get(PAYMENT_RESPONSE_HEADER)
        result["paymentResponse"] = raw_header
        settlement = decode_header(raw_header)
        sla_ms = requirement.extension.sla_ms
        if settlement and isinstance(settlement.get("fulfilledAt"), int):
            elapsed = settlement["fulfilledAt"] - started
            checks["settlesWithinSLA"] = _check(
                elapsed <= sla_ms, f"fulfilled {elapsed}ms after probe (SLA {sla_ms}ms)"
            )
        else:
            checks["settlesWithinSLA"] = _check(False, "no settlement header")

        pubkey_resp = await transport.get(f"{base}/server_pubkey")
        signer = pubkey_resp.json().get("pubkey", "") if pubkey_resp.status_code == 200 else ""

        call_resp = await transport.get(f"{base}/calls/{proof.call_id}")
        trace = call_resp.json().get("trace") if call_resp.status_code == 200 else None
        checks["traceSaved"] = _check(bool(trace), None if trace else "no trace recorded")
        if trace:
            valid = (
                trace.get("signer") == signer
                and verify_trace(proof.call_id, trace.get("responseHash", ""),
                                 trace.get("deliveredAt", 0), trace.get("signature", ""), signer)
            )
            checks["traceValid"] = _check(valid, None if valid else "trace signature did not verify")
        else:
            checks["traceValid"] = _check(False, "no trace to verify")

        mirrors = requirement.extension.mirrors or []
        if not mirrors:
            checks["mirrorSigValid"] = _check(True, "no mirrors advertised")
        else:
            good = verify_mirrors(requirement, signer)
            checks["mirrorSigValid"] = _check(
                len(good) == len(mirrors), f"{len(good)}/{len(mirrors)} mirror signatures valid"
            )
    except Exception as e:
        # Report where the walk stopped; remaining checks stay failed
        log.warning(f"Conformance run against {url} aborted: {e}")
        for name, check in checks.items():
            if check["detail"] == "not reached":
                check["detail"] = f"aborted: {e}"
                break

    result["ok"] = all(c["passed"] for c in checks.values())
    return result
