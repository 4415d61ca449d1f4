"""Shared crypto utilities for the vaultix escrow host.

Provides:
- Ed25519 identity (keypair generation, signing, verification)
- vx_<hex> identity strings for ledger parties
- Canonical JSON for deterministic storage and signing
- Signed API requests with replay protection

Dependencies: json, os, cryptography
"""

import json
import os
import time as _time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives import serialization

from protocol import REQUEST_MAX_AGE


# ---------------------------------------------------------------------------
# Ed25519 identity
# ---------------------------------------------------------------------------

def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """Generate a new Ed25519 keypair. Returns (privkey_bytes, pubkey_bytes).
    Both are 32 bytes raw."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    pub_bytes = privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return priv_bytes, pub_bytes


def load_ed25519_key(path: str) -> bytes:
    """Load a 32-byte raw Ed25519 private key from file."""
    with open(path, "rb") as f:
        data = f.read()
    if len(data) != 32:
        raise ValueError(f"Expected 32-byte Ed25519 key, got {len(data)} bytes")
    return data


def save_ed25519_key(path: str, key: bytes) -> None:
    """Save a 32-byte raw Ed25519 private key to file (mode 0600)."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, key)
    finally:
        os.close(fd)


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    """Derive the 32-byte public key from a 32-byte private key."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> str:
    """Sign data with Ed25519 private key. Returns 128-char hex signature."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.sign(data).hex()


def ed25519_verify(pubkey_bytes: bytes, data: bytes, sig_hex: str) -> bool:
    """Verify Ed25519 signature. Returns True if valid."""
    try:
        pubkey = Ed25519PublicKey.from_public_bytes(pubkey_bytes)
        pubkey.verify(bytes.fromhex(sig_hex), data)
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------------------------------------------------------
# vaultix identity: pubkey -> vx_id
# ---------------------------------------------------------------------------

def pubkey_to_vx_id(pubkey_bytes: bytes) -> str:
    """Convert 32-byte Ed25519 pubkey to identity string: 'vx_<64hex>'."""
    return "vx_" + pubkey_bytes.hex()


# ---------------------------------------------------------------------------
# Canonical JSON -- deterministic serialization for storage and signing
# ---------------------------------------------------------------------------

def canonical_json(obj) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


# ---------------------------------------------------------------------------
# Ed25519 request signing
# ---------------------------------------------------------------------------

class ReplayGuard:
    """Track seen signatures to prevent replay attacks. TTL matches REQUEST_MAX_AGE."""

    def __init__(self, ttl: int = REQUEST_MAX_AGE):
        self._seen: dict[str, float] = {}  # sig_hex -> expiry_timestamp
        self._ttl = ttl
        self._check_count = 0

    def check_and_record(self, sig_hex: str) -> bool:
        """Return False if sig was already seen, True if new (and record it)."""
        self._check_count += 1
        if self._check_count % 100 == 0:
            self._prune()

        now = _time.time()
        if sig_hex in self._seen and now < self._seen[sig_hex]:
            return False
        self._seen[sig_hex] = now + self._ttl
        return True

    def _prune(self):
        now = _time.time()
        self._seen = {k: v for k, v in self._seen.items() if v > now}


def sign_request_ed25519(
    privkey_bytes: bytes,
    pubkey_hex: str,
    method: str,
    path: str,
    body: str = "",
    timestamp: float | None = None,
) -> dict:
    """Sign an API request with Ed25519. Returns headers to include.

    Signs: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    ts = str(int(_time.time() if timestamp is None else timestamp))
    payload = f"{method}\n{path}\n{ts}\n{body}".encode("utf-8")
    sig = ed25519_sign(privkey_bytes, payload)
    return {
        "X-Vaultix-Timestamp": ts,
        "X-Vaultix-Signature": sig,
        "X-Vaultix-Pubkey": pubkey_hex,
    }


def verify_request_ed25519(
    method: str,
    path: str,
    body: str,
    timestamp: str,
    signature: str,
    pubkey_hex: str,
    max_age: int = REQUEST_MAX_AGE,
) -> tuple[bool, str]:
    """Verify an Ed25519-signed API request.

    Returns (ok, error_message).
    """
    try:
        ts = int(timestamp)
    except (ValueError, TypeError):
        return False, "invalid timestamp"

    age = _time.time() - ts
    if age < -30:  # allow 30s clock skew for future timestamps
        return False, f"request timestamp is in the future (skew={int(-age)}s)"
    if age > max_age:
        return False, f"request expired (age={int(age)}s, max={max_age}s)"

    try:
        pubkey_bytes = bytes.fromhex(pubkey_hex)
    except ValueError:
        return False, "invalid pubkey hex"
    if len(pubkey_bytes) != 32:
        return False, "invalid pubkey length"

    payload = f"{method}\n{path}\n{timestamp}\n{body}".encode("utf-8")
    if not ed25519_verify(pubkey_bytes, payload, signature):
        return False, "invalid signature"

    return True, ""
