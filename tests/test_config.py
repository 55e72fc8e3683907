"""Tests for config.py -- defaults, env loading and validation."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import unittest

from config import AssuredConfig
from protocol import ConfigError, DisputeBoundary


class TestDefaults(unittest.TestCase):
    def test_defaults(self):
        cfg = AssuredConfig()
        self.assertEqual(cfg.price, "0.001")
        self.assertEqual(cfg.settlement_mode, "mock")
        self.assertEqual(cfg.dispute_boundary, DisputeBoundary.INCLUSIVE)
        self.assertFalse(cfg.ledger_backed)

    def test_service_lookup(self):
        cfg = AssuredConfig()
        self.assertEqual(cfg.service_id("good_mirror"), "demo:good")
        self.assertEqual(cfg.service_id("stream"), "demo:stream")
        self.assertEqual(cfg.sla_ms("bad"), cfg.bad_sla_ms)
        with self.assertRaises(ConfigError):
            cfg.service_id("ugly")

    def test_with_overrides(self):
        cfg = AssuredConfig().with_overrides(settlement_mode="ledger")
        self.assertTrue(cfg.ledger_backed)


class TestValidation(unittest.TestCase):
    def test_bad_mode(self):
        with self.assertRaises(ConfigError):
            AssuredConfig(settlement_mode="chain")

    def test_zero_sla(self):
        with self.assertRaises(ConfigError):
            AssuredConfig(good_sla_ms=0)

    def test_negative_delay(self):
        with self.assertRaises(ConfigError):
            AssuredConfig(stream_chunk_delay_ms=-1)

    def test_port_range(self):
        with self.assertRaises(ConfigError):
            AssuredConfig(port=70000)

    def test_short_recipient(self):
        with self.assertRaises(ConfigError):
            AssuredConfig(recipient="abc")

    def test_price_not_number(self):
        with self.assertRaises(ConfigError):
            AssuredConfig(price="free")


class TestFromEnv(unittest.TestCase):
    def test_reads_prefixed_vars(self):
        cfg = AssuredConfig.from_env({
            "ASSURED_PORT": "4000",
            "ASSURED_SETTLEMENT_MODE": "ledger",
            "ASSURED_DISPUTE_BOUNDARY": "EXCLUSIVE",
            "ASSURED_MIRRORS": "http://a/x, http://b/y",
            "ASSURED_WEBHOOK_SECRET": "s3cret",
        })
        self.assertEqual(cfg.port, 4000)
        self.assertTrue(cfg.ledger_backed)
        self.assertEqual(cfg.dispute_boundary, DisputeBoundary.EXCLUSIVE)
        self.assertEqual(cfg.mirrors, ("http://a/x", "http://b/y"))
        self.assertEqual(cfg.webhook_secret, "s3cret")

    def test_empty_values_ignored(self):
        cfg = AssuredConfig.from_env({"ASSURED_PORT": ""})
        self.assertEqual(cfg.port, 3000)

    def test_overrides_win(self):
        cfg = AssuredConfig.from_env({"ASSURED_PORT": "4000"}, port=5000)
        self.assertEqual(cfg.port, 5000)

    def test_bad_int(self):
        with self.assertRaises(ConfigError):
            AssuredConfig.from_env({"ASSURED_GOOD_SLA_MS": "fast"})

    def test_bad_boundary(self):
        with self.assertRaises(ConfigError):
            AssuredConfig.from_env({"ASSURED_DISPUTE_BOUNDARY": "sometimes"})

    def test_key_path_expanded(self):
        cfg = AssuredConfig.from_env({"ASSURED_PROVIDER_KEY_PATH": "~/provider.key"})
        self.assertFalse(cfg.provider_key_path.startswith("~"))
