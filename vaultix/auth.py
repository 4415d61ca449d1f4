"""Caller authorization for the vaultix escrow host.

The core asks one question: does the current caller hold a proof for this
identity? require_proof() answers by returning, or by raising
AuthorizationError, which aborts the operation before any escrow check runs.

Backends:
- MockAuth: every proof succeeds; records what was asked (tests)
- StaticAuth: a fixed set of proven identities
- SignedRequestAuth: identities proven by a verified Ed25519 request signature
"""

import logging
from abc import ABC, abstractmethod

from crypto import pubkey_to_vx_id, verify_request_ed25519
from protocol import AuthorizationError, REQUEST_MAX_AGE

logger = logging.getLogger(__name__)


class AuthProvider(ABC):
    @abstractmethod
    def require_proof(self, identity: str) -> None:
        """Return if the caller controls `identity`, else raise AuthorizationError."""
        ...


class MockAuth(AuthProvider):
    """Authorizes everything and remembers each identity it was asked about."""

    def __init__(self):
        self.requested: list[str] = []

    def require_proof(self, identity: str) -> None:
        self.requested.append(identity)


class StaticAuth(AuthProvider):
    def __init__(self, identities=()):
        self.identities = set(identities)

    def require_proof(self, identity: str) -> None:
        if identity not in self.identities:
            logger.debug("auth: no proof for %s", identity)
            raise AuthorizationError(identity)


class SignedRequestAuth(StaticAuth):
    """Proofs derived from an Ed25519-signed request.

    A request signed by pubkey P proves the identity vx_<P>. Build one with
    from_request(); an invalid signature raises AuthorizationError right away.
    """

    @classmethod
    def from_request(cls, method: str, path: str, body: str, timestamp: str,
                     signature: str, pubkey_hex: str,
                     max_age: int = REQUEST_MAX_AGE) -> "SignedRequestAuth":
        ok, err = verify_request_ed25519(
            method, path, body, timestamp, signature, pubkey_hex, max_age=max_age,
        )
        identity = "vx_" + pubkey_hex
        if not ok:
            raise AuthorizationError(identity, err)
        return cls({pubkey_to_vx_id(bytes.fromhex(pubkey_hex))})
