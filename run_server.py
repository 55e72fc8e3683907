#!/usr/bin/env python3
"""x402-assured demo provider.

All settings come from ASSURED_* env vars (see config.py).
ASSURED_SETTLEMENT_MODE=ledger runs against the simulated custodial ledger
and funds the operator account so /run works out of the box.
"""

import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import logging

import uvicorn

from config import AssuredConfig
from protocol import ConfigError
from server.app import create_app
from server.ledger import SimBackend

log = logging.getLogger("assured")


def main():
    logging.basicConfig(
        level=os.environ.get("ASSURED_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = AssuredConfig.from_env()
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    backend = None
    if config.ledger_backed:
        backend = SimBackend(config.db_path)
        if backend.account_balance(config.operator_account) < config.min_custodial_balance:
            backend.fund(config.operator_account, config.min_custodial_balance * 10)

    app = create_app(config, payment_backend=backend)
    log.info(f"x402 assured server listening on {config.host}:{config.port}")
    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
