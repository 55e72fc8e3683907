"""Settlement orchestration for x402-assured.

Turns an unpaid request into a payment requirement, and a paid retry into
ledger calls through the configured SettlementBackend. Keeps the off-ledger
call transcript in step with every transition.

Three delivery paths:
- single: hash, sign, fulfill, settle (good, good_mirror)
- stream: one fulfill_partial per chunk, in order, then settle
- late: overshoot the SLA, dispute with LATE evidence, settle as refund
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from client import LedgerFacilitator, MockFacilitator, verify_mirrors
from crypto import (
    build_trace_message, ed25519_privkey_to_pubkey, generate_ed25519_keypair,
    hmac_verify, response_hash, sha256_hash, sign_mirror, sign_trace,
)
from policy import Policy, RegistryReader, balanced, cheap, enforce_policy
from protocol import (
    STREAM_CHUNKS, DisputeKind, SettlementOutcome,
    InfrastructureError, InsufficientFunds, InvalidTransition, LedgerUnavailable,
    PolicyViolation, ProtocolError, WebhookSignatureError, from_minor_units,
)
from schemas import (
    AssuredExtension, MirrorAd, PaymentRequirement, SettlementHeader,
    encode_header, parse_receipt, parse_requirement,
)
from server.escrow import current_ms
from server.reputation import ReputationManager, ServiceReputation
from server.store import PendingRequirements, TranscriptStore

log = logging.getLogger("assured.orchestrator")

RUN_FLOWS = ("good", "bad", "stream", "fallback")

# Primary-service price cap used by the fallback flow when no policy is given
FALLBACK_PRIMARY_MAX_PRICE = 0.0005

RELEASED = SettlementOutcome.RELEASED.value
REFUNDED = SettlementOutcome.REFUNDED.value


@dataclass
class Delivery:
    status_code: int
    body: dict
    headers: dict = field(default_factory=dict)


class SettlementOrchestrator:
    """Off-ledger coordinator for one provider."""

    def __init__(self, config, settlement, reputation: ReputationManager,
                 store: TranscriptStore | None = None, provider_privkey: bytes | None = None,
                 escrow_mgr=None, pending: PendingRequirements | None = None):
        self.config = config
        self.settlement = settlement
        self.reputation = reputation
        self.store = store or TranscriptStore()
        self.pending = pending or PendingRequirements()
        self.escrow = escrow_mgr
        # One in-flight delivery per call id; entries are dropped when idle
        self._call_locks: dict[str, asyncio.Lock] = {}
        self._call_waiters: dict[str, int] = {}
        if provider_privkey is None:
            provider_privkey, _ = generate_ed25519_keypair()
        self._privkey = provider_privkey
        self.provider_pubkey_hex = ed25519_privkey_to_pubkey(provider_privkey).hex()
        self.mirrors = [
            MirrorAd(url=url, sig=sign_mirror(provider_privkey, config.good_service_id, url))
            for url in config.mirrors
        ]

    @property
    def mode(self) -> str:
        return self.settlement.mode

    # --- requirements ---

    def build_requirement(self, kind: str) -> PaymentRequirement:
        """Current requirement snapshot for a service, with live registry data."""
        cfg = self.config
        service_id = cfg.service_id(kind)
        rep = self.reputation.get(service_id)
        ext = {
            "service_id": service_id,
            "sla_ms": cfg.sla_ms(kind),
            "dispute_window_s": cfg.dispute_window_s,
            "escrow_program_ref": cfg.escrow_program_id,
            "reputation_program_ref": cfg.reputation_program_id,
            "has_bond": rep.has_bond if rep else False,
            "bond_balance": rep.bond_balance if rep else 0,
            "sla_p95_ms": rep.p95_estimate_ms if rep else None,
        }
        if kind == "good":
            ext["alt_service"] = cfg.alt_service or None
            ext["mirrors"] = self.mirrors or None
        if kind == "stream":
            ext["stream"] = True
            ext["total_units"] = len(STREAM_CHUNKS)
        return PaymentRequirement(
            price=cfg.price,
            currency=cfg.currency,
            network=cfg.network,
            recipient=cfg.recipient,
            extension=AssuredExtension(**ext),
        )

    def issue_requirement(self, kind: str) -> dict:
        """Answer an unpaid probe. The snapshot is queued as pending for its service."""
        requirement = self.build_requirement(kind).to_wire()
        service_id = requirement["extension"]["serviceId"]
        self.pending.push(service_id, requirement, current_ms())
        log.info(f"Issued requirement for {service_id} ({kind})")
        return requirement

    # --- ledger calls ---

    def _ledger_call(self, label: str, fn, *args):
        """Run one ledger call, retrying within this request only."""
        attempts = self.config.ledger_attempts
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args)
            except InvalidTransition:
                raise
            except Exception as e:
                last_error = e
                log.warning(f"{label} attempt {attempt}/{attempts} failed: {e}")
        hint = getattr(last_error, "hint", "") or "ledger unreachable; retry the request later"
        raise LedgerUnavailable(
            f"{label} failed after {attempts} attempts: {last_error}", hint=hint
        ) from last_error

    # --- transcripts ---

    def _new_transcript(self, kind: str, receipt, header_value: str) -> dict:
        service_id = self.config.service_id(kind)
        popped = self.pending.pop_oldest(service_id)
        if popped:
            started_at, requirement = popped
        else:
            # Paid retry with no matching probe: baseline is now
            started_at, requirement = current_ms(), self.build_requirement(kind).to_wire()
        ext = requirement["extension"]
        stream = kind == "stream"
        return {
            "kind": kind,
            "startedAt": started_at,
            "slaMs": ext["slaMs"],
            "disputeWindowS": ext["disputeWindowS"],
            "paymentRequirements": requirement,
            "retryHeaders": {"x-payment": header_value},
            "responseHash": None,
            "programIds": {
                "escrow": self.config.escrow_program_id,
                "reputation": self.config.reputation_program_id,
            },
            "tx": {"init": receipt.tx_ref, "fulfill": None, "dispute": None, "settle": None},
            "outcome": None,
            "evidence": [],
            "webhookVerified": None,
            "webhookReceivedAt": None,
            "trace": None,
            "stream": {
                "enabled": stream,
                "totalUnits": len(STREAM_CHUNKS) if stream else 1,
                "unitsReleased": 0,
                "timeline": [],
            },
            "bond": None,
            "latency": None,
            "mirrors": ext.get("mirrors", []),
            "settlementMode": self.mode,
        }

    def _trace_record(self, call_id: str, rhash: str, delivered_at: int, signature: str) -> dict:
        return {
            "responseHash": rhash,
            "signature": signature,
            "signer": self.provider_pubkey_hex,
            "message": build_trace_message(call_id, rhash, delivered_at),
            "deliveredAt": delivered_at,
            "savedAt": current_ms(),
        }

    def _bond_snapshot(self, rep: ServiceReputation) -> dict:
        return {
            "hasBond": rep.has_bond,
            "bondBalance": rep.bond_balance,
            "bond": str(from_minor_units(rep.bond_balance, self.config.price_decimals)),
        }

    @staticmethod
    def _latency_snapshot(rep: ServiceReputation) -> dict:
        return {
            "ewmaMs": rep.ewma_latency_ms,
            "p95Ms": rep.p95_estimate_ms,
            "samples": rep.latency_sample_count,
        }

    def _finish(self, call_id: str, service_id: str, settled: dict, latency_ms: int) -> dict:
        """Record the terminal outcome and the aggregates it moved."""
        rep = self.reputation.update_latency(service_id, max(0, latency_ms))

        def record(t):
            t["outcome"] = settled["outcome"]
            t["tx"]["settle"] = settled.get("txRef") or None
            t["bondSlashed"] = settled.get("bondSlashed", 0)
            t["bond"] = self._bond_snapshot(rep)
            t["latency"] = self._latency_snapshot(rep)

        transcript = self.store.mutate(call_id, record)
        log.info(f"{call_id}: {settled['outcome']} in {latency_ms}ms ({self.mode})")
        return transcript

    # --- delivery ---

    async def deliver(self, kind: str, header_value: str | None) -> Delivery:
        """Handle a paid retry. Raises ProtocolError for a bad X-PAYMENT header."""
        receipt = parse_receipt(header_value)
        if receipt is None:
            raise ProtocolError("Missing X-PAYMENT header")
        service_id = self.config.service_id(kind)
        transcript, created = self.store.get_or_create(
            receipt.call_id, service_id,
            lambda: self._new_transcript(kind, receipt, header_value),
        )
        if transcript["serviceId"] != service_id:
            raise ProtocolError(
                f"Call {receipt.call_id} belongs to {transcript['serviceId']}, not {service_id}"
            )
        if created:
            log.info(f"{receipt.call_id}: paid retry accepted for {service_id}")

        async with self._delivery_guard(receipt.call_id):
            # An overlapping retry may have advanced the call while this one waited
            transcript = self.store.get(receipt.call_id)
            if kind == "bad":
                return await self._deliver_late(transcript)
            if kind == "stream":
                return await self._deliver_stream(transcript)
            return await self._deliver_single(kind, transcript)

    @asynccontextmanager
    async def _delivery_guard(self, call_id: str):
        lock = self._call_locks.setdefault(call_id, asyncio.Lock())
        self._call_waiters[call_id] = self._call_waiters.get(call_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._call_waiters[call_id] -= 1
            if not self._call_waiters[call_id]:
                del self._call_waiters[call_id]
                del self._call_locks[call_id]

    @staticmethod
    def _payload(kind: str) -> dict:
        payload = {"ok": True, "data": {"hello": "world"}}
        if kind == "good_mirror":
            payload["mirror"] = True
        return payload

    def _settlement_header(self, transcript: dict) -> str:
        return encode_header(SettlementHeader(
            call_id=transcript["callId"],
            response_hash=transcript["responseHash"],
            fulfilled_at=transcript["trace"]["deliveredAt"],
            mode=transcript["settlementMode"],
        ).to_wire())

    def _not_released(self, transcript: dict) -> Delivery:
        return Delivery(409, {"ok": False, "error": "REFUNDED", "callId": transcript["callId"]})

    async def _deliver_single(self, kind: str, transcript: dict) -> Delivery:
        call_id = transcript["callId"]
        service_id = transcript["serviceId"]
        payload = self._payload(kind)

        if transcript["outcome"] is None:
            if transcript["tx"]["fulfill"] is None:
                rhash = response_hash(payload)
                delivered_at = current_ms()
                signature = sign_trace(self._privkey, call_id, rhash, delivered_at)
                fulfill_tx = self._ledger_call(
                    "fulfill", self.settlement.fulfill,
                    call_id, service_id, rhash, delivered_at, signature,
                )
                trace = self._trace_record(call_id, rhash, delivered_at, signature)

                def record_fulfill(t):
                    t["responseHash"] = rhash
                    t["trace"] = trace
                    t["tx"]["fulfill"] = fulfill_tx

                transcript = self.store.mutate(call_id, record_fulfill)
            delivered_at = transcript["trace"]["deliveredAt"]
            settled = self._ledger_call("settle", self.settlement.settle, call_id, service_id)
            transcript = self._finish(call_id, service_id, settled, delivered_at - transcript["startedAt"])

        if transcript["outcome"] != RELEASED:
            return self._not_released(transcript)
        return Delivery(200, payload, {"X-PAYMENT-RESPONSE": self._settlement_header(transcript)})

    def _released_units(self, call_id: str, transcript: dict) -> int:
        released = len(transcript["stream"]["timeline"])
        if self.config.ledger_backed and self.escrow is not None:
            call = self.escrow.get(call_id)
            if call is not None:
                released = max(released, call.units_released)
        return released

    async def _deliver_stream(self, transcript: dict) -> Delivery:
        call_id = transcript["callId"]
        service_id = transcript["serviceId"]
        payload = {"ok": True, "chunks": list(STREAM_CHUNKS)}
        delay_s = self.config.stream_chunk_delay_ms / 1000

        if transcript["outcome"] is None:
            # Resume after the last chunk that reached the ledger
            start = self._released_units(call_id, transcript)
            for index in range(start, len(STREAM_CHUNKS)):
                chunk_hash = sha256_hash(STREAM_CHUNKS[index].encode("utf-8"))
                at = current_ms()
                signature = sign_trace(self._privkey, call_id, chunk_hash, at)
                tx = self._ledger_call(
                    f"fulfill_partial[{index}]", self.settlement.fulfill_partial,
                    call_id, service_id, chunk_hash, 1, at, signature,
                )
                entry = {"index": index, "at": at, "hash": chunk_hash, "signature": signature, "tx": tx}

                def record_chunk(t, entry=entry):
                    t["stream"]["timeline"].append(entry)
                    t["stream"]["unitsReleased"] = entry["index"] + 1
                    t["tx"]["fulfill"] = entry["tx"]

                self.store.mutate(call_id, record_chunk)
                if index < len(STREAM_CHUNKS) - 1 and delay_s > 0:
                    await asyncio.sleep(delay_s)

            transcript = self.store.get(call_id)
            timeline = transcript["stream"]["timeline"]
            last_at = timeline[-1]["at"] if timeline else current_ms()
            if transcript["trace"] is None:
                rhash = response_hash(payload)
                trace = self._trace_record(
                    call_id, rhash, last_at, sign_trace(self._privkey, call_id, rhash, last_at),
                )

                def record_trace(t):
                    t["responseHash"] = rhash
                    t["trace"] = trace

                transcript = self.store.mutate(call_id, record_trace)
            settled = self._ledger_call("settle", self.settlement.settle, call_id, service_id)
            transcript = self._finish(call_id, service_id, settled, last_at - transcript["startedAt"])

        if transcript["outcome"] != RELEASED:
            return self._not_released(transcript)
        body = {**payload, "callId": call_id, "timeline": transcript["stream"]["timeline"]}
        return Delivery(200, body, {"X-PAYMENT-RESPONSE": self._settlement_header(transcript)})

    async def _deliver_late(self, transcript: dict) -> Delivery:
        call_id = transcript["callId"]
        service_id = transcript["serviceId"]
        sla_ms = transcript["slaMs"]

        if transcript["outcome"] is None:
            if transcript["tx"]["dispute"] is None:
                await asyncio.sleep((sla_ms + self.config.bad_overshoot_ms) / 1000)
                now = current_ms()
                elapsed = now - transcript["startedAt"]
                reason_hash = response_hash({"callId": call_id, "kind": "LATE", "elapsedMs": elapsed})
                dispute_tx = self._ledger_call(
                    "raise_dispute", self.settlement.raise_dispute,
                    call_id, service_id, DisputeKind.LATE, reason_hash,
                )
                evidence = {
                    "kind": DisputeKind.LATE.value,
                    "detail": f"no response within {sla_ms}ms SLA",
                    "elapsedMs": elapsed,
                    "reasonHash": reason_hash,
                    "at": now,
                }

                def record_dispute(t):
                    t["evidence"].append(evidence)
                    t["tx"]["dispute"] = dispute_tx

                transcript = self.store.mutate(call_id, record_dispute)
            elapsed = transcript["evidence"][-1]["elapsedMs"]
            settled = self._ledger_call("settle", self.settlement.settle, call_id, service_id)
            transcript = self._finish(call_id, service_id, settled, elapsed)

        return Delivery(503, {
            "ok": False,
            "error": "SLA_MISSED",
            "callId": call_id,
            "outcome": transcript["outcome"],
            "evidence": transcript["evidence"],
        })

    # --- webhooks ---

    def record_webhook(self, raw_body: bytes, signature: str | None) -> dict:
        """Accept a settlement webhook. HMAC is enforced only when a secret is set."""
        secret = self.config.webhook_secret
        verified = False
        if secret:
            if not hmac_verify(secret.encode("utf-8"), raw_body, signature or ""):
                log.warning("Rejected settlement webhook: invalid signature")
                raise WebhookSignatureError("Invalid webhook signature")
            verified = True
        try:
            body = json.loads(raw_body or b"{}")
        except ValueError:
            raise ProtocolError("Webhook body is not JSON")
        call_id = body.get("callId") if isinstance(body, dict) else None
        received_at = current_ms()
        matched = None
        if call_id:
            def mark(t):
                t["webhookVerified"] = verified
                t["webhookReceivedAt"] = received_at

            matched = self.store.mutate(call_id, mark)
        log.info(f"Settlement webhook for {call_id} (verified={verified}, known={matched is not None})")
        return {"ok": True, "callId": call_id, "verified": verified, "matched": matched is not None}

    # --- operator flows ---

    def _facilitator(self):
        if not self.config.ledger_backed:
            return MockFacilitator()
        operator = self.config.operator_account
        minimum = self.config.min_custodial_balance
        balance = self.escrow.payment.account_balance(operator)
        if balance < minimum:
            raise InsufficientFunds(
                f"Operator balance {balance} is below the {minimum} minimum for ledger flows",
                hint=f"fund {operator} with at least {minimum - balance} more minor units",
            )
        return LedgerFacilitator(self.escrow, operator, self.config.price_decimals)

    async def _run_paid(self, kind: str, policy: Policy, facilitator) -> dict:
        wire = self.issue_requirement(kind)
        service_id = wire["extension"]["serviceId"]
        requirement = parse_requirement(wire)
        try:
            await enforce_policy(requirement, policy, RegistryReader(self.reputation))
            proof = facilitator.pay(requirement)
        except (PolicyViolation, InfrastructureError, InvalidTransition):
            self.pending.withdraw(service_id, wire)
            raise
        delivery = await self.deliver(kind, proof.header_value)
        transcript = self.store.get(proof.call_id)
        return {**transcript, "httpStatus": delivery.status_code}

    async def run_flow(self, flow: str, policy: Policy | None = None) -> dict:
        """Operator action: pay for and deliver one call in-process."""
        if flow not in RUN_FLOWS:
            raise ProtocolError(f"Unknown flow: {flow}")
        facilitator = self._facilitator()
        if flow != "fallback":
            return await self._run_paid(flow, policy or balanced(), facilitator)

        primary_policy = policy or balanced().merged(max_price=FALLBACK_PRIMARY_MAX_PRICE)
        try:
            return await self._run_paid("good", primary_policy, facilitator)
        except PolicyViolation as refusal:
            mirrors = verify_mirrors(self.build_requirement("good"), self.provider_pubkey_hex)
            if not mirrors:
                raise
            log.info(f"Primary refused ({refusal.clause}); falling back to {mirrors[0].url}")
            result = await self._run_paid("good_mirror", cheap(), facilitator)
            fallback = {"from": "good", "clause": refusal.clause, "reason": str(refusal), "mirror": mirrors[0].url}

            def record_fallback(t):
                t["fallback"] = fallback

            self.store.mutate(result["callId"], record_fallback)
            return {**result, "fallback": fallback}

    # --- read models ---

    def reputation_view(self, service_id: str) -> dict:
        rep = self.reputation.get(service_id)
        return {**(rep or ServiceReputation(service_id=service_id)).to_dict(), "seen": rep is not None}

    def summary(self) -> dict:
        cfg = self.config
        configured = [cfg.good_service_id, cfg.bad_service_id, cfg.stream_service_id]
        known = {r.service_id: r for r in self.reputation.list_services()}
        ids = configured + sorted(set(known) - set(configured))
        services = [(known.get(s) or ServiceReputation(service_id=s)).to_dict() for s in ids]
        recent = [
            {
                "callId": t["callId"],
                "serviceId": t["serviceId"],
                "startedAt": t["startedAt"],
                "slaMs": t["slaMs"],
                "outcome": t["outcome"],
                "tx": t["tx"],
                "stream": t["stream"] if t["stream"]["enabled"] else None,
            }
            for t in self.store.recent(cfg.recent_calls_limit)
        ]
        return {"services": services, "recent": recent}

    def transcript(self, call_id: str) -> dict | None:
        return self.store.get(call_id)
