import sys
import os

# Ensure repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from config import AssuredConfig
from crypto import generate_ed25519_keypair
from server.escrow import EscrowManager
from server.ledger import SimBackend
from server.reputation import ReputationManager


# Shared provider identity so signatures are stable within a test run
PROVIDER_PRIVKEY, PROVIDER_PUBKEY = generate_ed25519_keypair()
OTHER_PRIVKEY, OTHER_PUBKEY = generate_ed25519_keypair()

PAYER = "payer_account"
PROVIDER = "CTdyT6ZctmsuPhkJrfcvQgAe95uPS45aXErGLKAhAZAA"
PRICE = 1_000_000  # 0.001 at 9 decimals

T0 = 1_700_000_000_000  # fixed epoch ms for deterministic escrow tests


def fast_config(**overrides) -> AssuredConfig:
    """Config with timings shrunk so full flows run in milliseconds."""
    values = dict(
        good_sla_ms=2000,
        bad_sla_ms=5,
        stream_sla_ms=5000,
        bad_overshoot_ms=5,
        stream_chunk_delay_ms=0,
        dispute_window_s=10,
    )
    values.update(overrides)
    return AssuredConfig(**values)


def make_ledger(balance: int = 100 * PRICE, bond: int = 0, **escrow_kwargs):
    """SimBackend + ReputationManager + EscrowManager with a funded payer.

    Returns (escrow_mgr, backend, reputation).
    """
    backend = SimBackend()
    backend.fund(PAYER, balance)
    reputation = ReputationManager()
    if bond:
        reputation.bond_deposit("demo:good", bond, PROVIDER)
        reputation.bond_deposit("demo:bad", bond, PROVIDER)
    escrow = EscrowManager(payment_backend=backend, reputation=reputation, **escrow_kwargs)
    return escrow, backend, reputation


def init_call(escrow, call_id="demo:good:1:aa", service_id="demo:good", amount=PRICE,
              sla_ms=2000, dispute_window_s=10, total_units=1, now_ms=T0):
    return escrow.init_payment(
        call_id, service_id, amount, sla_ms, dispute_window_s,
        total_units=total_units, payer=PAYER, provider=PROVIDER, now_ms=now_ms,
    )
