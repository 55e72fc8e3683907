"""Tests for policy.py -- client payment policy enforcement."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import httpx
import pytest

from policy import (
    HTTPRegistryReader, Policy, RegistryReader, StaticReader,
    balanced, cheap, enforce_policy, preset, strict,
)
from protocol import Outcome, PolicyViolation
from schemas import parse_requirement
from server.reputation import ReputationManager


def make_requirement(price="0.05", sla_ms=2000, service_id="demo:good"):
    return parse_requirement({
        "price": price,
        "currency": "USDC",
        "network": "solana-devnet",
        "recipient": "CTdyT6ZctmsuPhkJrfcvQgAe95uPS45aXErGLKAhAZAA",
        "extension": {
            "serviceId": service_id,
            "slaMs": sla_ms,
            "disputeWindowS": 10,
            "escrowProgramRef": "escrow",
            "reputationProgramRef": "reputation",
        },
    })


class TestPolicyModel:
    def test_presets(self):
        assert strict().min_reputation == 0.8
        assert balanced().max_price == 0.05
        assert cheap().require_sla is False
        assert preset("cheap") == cheap()

    def test_unknown_preset(self):
        with pytest.raises(ValueError):
            preset("reckless")

    def test_merged_ignores_none(self):
        p = balanced().merged(max_price=0.01, min_reputation=None)
        assert p.max_price == 0.01
        assert p.min_reputation == 0.6

    def test_from_dict_camel_case(self):
        p = Policy.from_dict({"maxPrice": 0.01, "requireSLA": False, "slaP95MaxMs": 500})
        assert p.max_price == 0.01
        assert p.require_sla is False
        assert p.sla_p95_max_ms == 500
        assert p.min_reputation == 0.6

    def test_from_dict_snake_case_and_base(self):
        p = Policy.from_dict({"min_reputation": 0.9}, base=cheap())
        assert p.min_reputation == 0.9
        assert p.max_price == 0.01

    def test_to_dict(self):
        assert strict().to_dict()["requireSLA"] is True


class TestEnforcePolicy:
    @pytest.mark.asyncio
    async def test_price_over_max_rejected(self):
        with pytest.raises(PolicyViolation) as exc:
            await enforce_policy(make_requirement(price="0.05"), balanced().merged(max_price=0.01))
        assert exc.value.clause == "max_price"

    @pytest.mark.asyncio
    async def test_price_at_max_accepted(self):
        await enforce_policy(make_requirement(price="0.05"), balanced())

    @pytest.mark.asyncio
    async def test_low_reputation_rejected(self):
        reader = StaticReader(scores={"demo:good": 0.5})
        with pytest.raises(PolicyViolation) as exc:
            await enforce_policy(make_requirement(), strict().merged(max_price=1.0), reader)
        assert exc.value.clause == "min_reputation"

    @pytest.mark.asyncio
    async def test_unseen_service_accepted(self):
        await enforce_policy(make_requirement(), strict().merged(max_price=1.0), StaticReader())

    @pytest.mark.asyncio
    async def test_no_reader_treated_as_unseen(self):
        await enforce_policy(make_requirement(), strict().merged(max_price=1.0))

    @pytest.mark.asyncio
    async def test_price_checked_before_reputation(self):
        reader = StaticReader(scores={"demo:good": 0.0})
        with pytest.raises(PolicyViolation) as exc:
            await enforce_policy(make_requirement(price="1"), strict(), reader)
        assert exc.value.clause == "max_price"

    @pytest.mark.asyncio
    async def test_p95_over_max_rejected(self):
        reader = StaticReader(p95s={"demo:good": 900.0})
        policy = balanced().merged(sla_p95_max_ms=500)
        with pytest.raises(PolicyViolation) as exc:
            await enforce_policy(make_requirement(), policy, reader)
        assert exc.value.clause == "sla_p95_max_ms"

    @pytest.mark.asyncio
    async def test_p95_unknown_passes(self):
        await enforce_policy(make_requirement(), balanced().merged(sla_p95_max_ms=500), StaticReader())

    @pytest.mark.asyncio
    async def test_zero_min_reputation_skips_lookup(self):
        reader = StaticReader(scores={"demo:good": 0.0})
        await enforce_policy(make_requirement(), cheap().merged(min_reputation=0.0, max_price=1.0), reader)


class TestReaders:
    @pytest.mark.asyncio
    async def test_registry_reader(self):
        rep = ReputationManager()
        rep.apply_weighted_outcome("svc", Outcome.OK)
        rep.apply_weighted_outcome("svc", Outcome.DISPUTED)
        rep.update_latency("svc", 120)
        reader = RegistryReader(rep)
        assert await reader.score("svc") == 0.5
        assert await reader.p95("svc") == 120
        assert await reader.score("unseen") is None

    @pytest.mark.asyncio
    async def test_http_registry_reader(self):
        requests = []

        def handler(request):
            requests.append(request.url.path)
            if request.url.path == "/reputation/known":
                return httpx.Response(200, json={"seen": True, "score": 0.25, "p95EstimateMs": 80})
            if request.url.path == "/reputation/fresh":
                return httpx.Response(200, json={"seen": False, "score": 1.0, "p95EstimateMs": None})
            return httpx.Response(404)

        class MockTransport:
            def __init__(self):
                self.client = httpx.AsyncClient(transport=httpx.MockTransport(handler),
                                                base_url="http://provider")

            async def get(self, url, headers=None):
                return await self.client.get(url, headers=headers)

        reader = HTTPRegistryReader(MockTransport())
        assert await reader.score("known") == 0.25
        assert await reader.p95("known") == 80
        assert await reader.score("fresh") is None
        assert await reader.score("missing") is None
        assert requests.count("/reputation/known") == 1
