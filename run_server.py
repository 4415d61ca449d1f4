#!/usr/bin/env python3
"""Vaultix escrow server: SQLite-backed host with a simulated token ledger.

Settings from VAULTIX_* env vars (never in code).
"""

import logging
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn

from protocol import CONTRACT_ADDRESS, DEFAULT_FEE_BPS
from vaultix.app import create_app
from vaultix.escrow import EscrowManager
from vaultix.host import Host
from vaultix.ledger import SimLedger
from vaultix.store import SQLiteStore

DB_PATH = os.environ.get("VAULTIX_DB", "/var/lib/vaultix/escrow.db")
LEDGER_DB_PATH = os.environ.get("VAULTIX_LEDGER_DB", "/var/lib/vaultix/ledger.db")
PORT = int(os.environ.get("VAULTIX_PORT", "8000"))
LOG_LEVEL = os.environ.get("VAULTIX_LOG_LEVEL", "INFO")


def build_manager(db_path: str = DB_PATH, ledger_db_path: str = LEDGER_DB_PATH) -> EscrowManager:
    """Escrow state and token balances live in separate databases."""
    host = Host(
        store=SQLiteStore(db_path),
        ledger=SimLedger(SQLiteStore(ledger_db_path)),
        contract_address=CONTRACT_ADDRESS,
    )
    return EscrowManager(host, default_fee_bps=DEFAULT_FEE_BPS)


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    for path in (DB_PATH, LEDGER_DB_PATH):
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    app = create_app(build_manager())

    print(f"[server] Escrow holding account: {CONTRACT_ADDRESS}")
    print(f"[server] Default platform fee: {DEFAULT_FEE_BPS} bps")
    print(f"[server] Listening on :{PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
