import sys
import os
import json

# Ensure repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from crypto import generate_ed25519_keypair, pubkey_to_vx_id, sign_request_ed25519
from vaultix.auth import MockAuth
from vaultix.escrow import EscrowManager, Milestone
from vaultix.events import EventLog
from vaultix.host import Host
from vaultix.ledger import SimLedger
from vaultix.store import MemoryStore


TOKEN = "vx_token_usdc"
CONTRACT = "vx_escrow_contract_test"

# Pre-generated test keypairs for deterministic tests
_DEPOSITOR_PRIV, _DEPOSITOR_PUB = generate_ed25519_keypair()
_RECIPIENT_PRIV, _RECIPIENT_PUB = generate_ed25519_keypair()
_TREASURY_PRIV, _TREASURY_PUB = generate_ed25519_keypair()
_STRANGER_PRIV, _STRANGER_PUB = generate_ed25519_keypair()

DEPOSITOR = pubkey_to_vx_id(_DEPOSITOR_PUB)
RECIPIENT = pubkey_to_vx_id(_RECIPIENT_PUB)
TREASURY = pubkey_to_vx_id(_TREASURY_PUB)
STRANGER = pubkey_to_vx_id(_STRANGER_PUB)

DEPOSITOR_PRIV = _DEPOSITOR_PRIV
RECIPIENT_PRIV = _RECIPIENT_PRIV
TREASURY_PRIV = _TREASURY_PRIV
STRANGER_PRIV = _STRANGER_PRIV


def make_manager(auth=None, fee_bps=None, initialize=True, mint=10_000):
    """EscrowManager on an in-memory host with a funded depositor.

    Returns (manager, ledger, events).
    """
    ledger = SimLedger()
    events = EventLog()
    host = Host(store=MemoryStore(), ledger=ledger, events=events, contract_address=CONTRACT)
    mgr = EscrowManager(host, auth=auth or MockAuth())
    if mint:
        ledger.mint(TOKEN, DEPOSITOR, mint)
    if initialize:
        mgr.initialize(TREASURY, fee_bps)
    return mgr, ledger, events


def milestones(*amounts):
    return [Milestone(a, f"M{i}") for i, a in enumerate(amounts)]


# Monotonic counter to ensure unique signatures across rapid test calls.
_nonce_counter = 0


def signed_post(client, path, data, identity, privkey_bytes):
    """Make an Ed25519-signed POST request for tests.

    Uses a nonce embedded in the body to ensure unique signatures even when
    the same endpoint+body is called multiple times in the same second
    (prevents replay guard false positives in tests).
    """
    global _nonce_counter
    _nonce_counter += 1
    data_with_nonce = {**data, "_nonce": _nonce_counter}
    body = json.dumps(data_with_nonce)
    pub_hex = identity[3:] if identity.startswith("vx_") else identity
    auth_headers = sign_request_ed25519(privkey_bytes, pub_hex, "POST", path, body)
    return client.post(path, content=body, headers={
        "Content-Type": "application/json",
        **auth_headers,
    })
