"""Tests for server/settlement.py -- mock and ledger settlement modes."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import unittest

from protocol import DisputeKind, InvalidTransition
from server.reputation import ReputationManager
from server.settlement import LedgerSettlement, MockSettlement, build_settlement
from conftest import PROVIDER, PRICE, fast_config, init_call, make_ledger


class TestMockSettlement(unittest.TestCase):
    def setUp(self):
        self.rep = ReputationManager()
        self.rep.bond_deposit("svc", 1000, "alice")
        self.settlement = MockSettlement(self.rep, bond_slash_amount=300)

    def test_refs_are_mock(self):
        ref = self.settlement.fulfill("c1", "svc", "ab" * 32, 1, "sig")
        self.assertTrue(ref.startswith("mock_"))
        self.assertNotEqual(ref, self.settlement.fulfill("c2", "svc", "ab" * 32, 1, "sig"))

    def test_release(self):
        self.settlement.fulfill("c1", "svc", "h", 1, "sig")
        result = self.settlement.settle("c1", "svc")
        self.assertEqual(result["outcome"], "RELEASED")
        self.assertEqual(result["bondSlashed"], 0)
        self.assertEqual(self.rep.get("svc").ok, 1)

    def test_refund_after_dispute(self):
        self.settlement.raise_dispute("c1", "svc", DisputeKind.LATE, "late")
        result = self.settlement.settle("c1", "svc")
        self.assertEqual(result["outcome"], "REFUNDED")
        self.assertEqual(result["bondSlashed"], 300)
        stats = self.rep.get("svc")
        self.assertEqual(stats.disputed, 1)
        self.assertEqual(stats.late, 1)
        self.assertEqual(stats.bond_balance, 700)

    def test_settle_idempotent(self):
        self.settlement.raise_dispute("c1", "svc", "NO_RESPONSE", "x")
        first = self.settlement.settle("c1", "svc")
        second = self.settlement.settle("c1", "svc")
        self.assertEqual(first, second)
        self.assertEqual(self.rep.get("svc").disputed, 1)
        self.assertEqual(self.rep.get("svc").bond_balance, 700)


class TestLedgerSettlement(unittest.TestCase):
    def setUp(self):
        self.escrow, self.backend, self.rep = make_ledger()
        self.settlement = LedgerSettlement(self.escrow)

    def test_fulfill_and_settle(self):
        call = init_call(self.escrow, now_ms=None)
        ref = self.settlement.fulfill(call.call_id, "demo:good", "h", call.start_ts + 10, "sig")
        self.assertEqual(ref, f"fulfill:{call.call_id}:{call.start_ts + 10}")
        result = self.settlement.settle(call.call_id, "demo:good")
        self.assertEqual(result["outcome"], "RELEASED")
        self.assertEqual(result["txRef"], result["txRefs"]["provider_payout"])
        self.assertEqual(self.backend.account_balance(PROVIDER), PRICE)

    def test_partial_ref(self):
        call = init_call(self.escrow, call_id="s1", service_id="demo:stream", total_units=3)
        ref = self.settlement.fulfill_partial(call.call_id, "demo:stream", "h", 2, call.start_ts + 1, "s")
        self.assertEqual(ref, "partial:s1:2")

    def test_dispute_then_refund(self):
        call = init_call(self.escrow, now_ms=None)
        ref = self.settlement.raise_dispute(call.call_id, "demo:good", DisputeKind.NO_RESPONSE, "x")
        self.assertEqual(ref, f"dispute:{call.call_id}:1")
        result = self.settlement.settle(call.call_id, "demo:good")
        self.assertEqual(result["outcome"], "REFUNDED")
        self.assertEqual(result["txRef"], result["txRefs"]["payer_refund"])

    def test_escrow_errors_propagate(self):
        with self.assertRaises(InvalidTransition):
            self.settlement.fulfill("missing", "demo:good", "h", 1, "sig")


class TestBuildSettlement(unittest.TestCase):
    def test_mock_by_default(self):
        settlement = build_settlement(fast_config(), ReputationManager())
        self.assertEqual(settlement.mode, "mock")

    def test_ledger_requires_escrow(self):
        cfg = fast_config(settlement_mode="ledger")
        with self.assertRaises(ValueError):
            build_settlement(cfg, ReputationManager())
        escrow, _, rep = make_ledger()
        self.assertEqual(build_settlement(cfg, rep, escrow).mode, "ledger")
