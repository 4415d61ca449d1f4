"""API client for the vaultix escrow host.

Thin HTTP client with a pluggable transport interface.
Default transport: HTTP with Ed25519-signed requests.

Escrow errors come back from the host as {"error", "code", "detail"} and are
re-raised here as EscrowError, so callers handle the same error codes
whether they run the manager in-process or talk to a host.
"""

import json
import logging
import os
from abc import ABC, abstractmethod

import httpx

from crypto import (
    ed25519_privkey_to_pubkey, generate_ed25519_keypair, load_ed25519_key,
    pubkey_to_vx_id, save_ed25519_key, sign_request_ed25519,
)
from protocol import DEFAULT_PAGE_LIMIT, EscrowError

logger = logging.getLogger(__name__)

# Signing key for the client identity. Created on first use if missing.
KEY_PATH = os.environ.get("VAULTIX_KEY", os.path.expanduser("~/.vaultix/client.key"))


class Transport(ABC):
    """Override this to reach the host some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        ...


class HTTPTransport(Transport):
    """Default. Talks to a vaultix host over HTTP with Ed25519 auth.

    `http_transport` is handed to httpx.AsyncClient (e.g. httpx.ASGITransport
    to drive an in-process app).
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        privkey_bytes: bytes | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.privkey_bytes = privkey_bytes
        self.http_transport = http_transport
        self.timeout = timeout
        if privkey_bytes:
            self.pubkey_hex = ed25519_privkey_to_pubkey(privkey_bytes).hex()
        else:
            self.pubkey_hex = ""

    def _headers(self, method: str = "GET", path: str = "", body: str = "") -> dict:
        h = {"Content-Type": "application/json"}
        if self.privkey_bytes:
            h.update(sign_request_ed25519(self.privkey_bytes, self.pubkey_hex, method, path, body))
        return h

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self.http_transport,
                                 timeout=self.timeout)

    @staticmethod
    def _unwrap(resp: httpx.Response) -> dict:
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            if isinstance(payload, dict) and "code" in payload:
                raise EscrowError(payload["code"], payload.get("detail", ""))
        resp.raise_for_status()
        return resp.json()

    async def post(self, path: str, data: dict) -> dict:
        body = json.dumps(data)
        async with self._client() as client:
            resp = await client.post(path, content=body, headers=self._headers("POST", path, body))
            return self._unwrap(resp)

    async def get(self, path: str, params: dict | None = None) -> dict:
        async with self._client() as client:
            resp = await client.get(path, params=params, headers=self._headers("GET", path))
            return self._unwrap(resp)


class VaultixClient:
    """High-level client for a vaultix escrow host.

    Mutating calls are signed with `privkey_bytes`; the host treats the
    signer's vx_ identity as the only proven caller.
    """

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000",
                 privkey_bytes: bytes | None = None):
        self.privkey_bytes = privkey_bytes
        if privkey_bytes:
            self.vx_id = pubkey_to_vx_id(ed25519_privkey_to_pubkey(privkey_bytes))
        else:
            self.vx_id = ""
        if transport:
            self.transport = transport
        else:
            self.transport = HTTPTransport(base_url, privkey_bytes=privkey_bytes)

    @classmethod
    def from_key_file(cls, path: str = "", base_url: str = "http://localhost:8000",
                      transport: Transport | None = None) -> "VaultixClient":
        """Client signing with the key at `path` (default KEY_PATH).

        A missing key file is generated and saved with mode 0600.
        """
        path = path or KEY_PATH
        if os.path.exists(path):
            privkey = load_ed25519_key(path)
        else:
            privkey, pubkey = generate_ed25519_keypair()
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            save_ed25519_key(path, privkey)
            logger.info("generated new client identity %s at %s", pubkey_to_vx_id(pubkey), path)
        if transport is None:
            transport = HTTPTransport(base_url, privkey_bytes=privkey)
        return cls(transport=transport, privkey_bytes=privkey)

    # --- Configuration ---

    async def initialize(self, treasury: str = "", fee_bps: int | None = None) -> dict:
        """Set the platform treasury (defaults to the signer) and fee."""
        data = {"treasury": treasury or self.vx_id}
        if fee_bps is not None:
            data["fee_bps"] = fee_bps
        return await self.transport.post("/initialize", data)

    async def update_fee(self, new_fee_bps: int) -> dict:
        return await self.transport.post("/config/fee", {"new_fee_bps": new_fee_bps})

    async def get_config(self) -> dict:
        return await self.transport.get("/config")

    # --- Escrows ---

    async def create_escrow(self, escrow_id: int, recipient: str, milestones: list[dict],
                            token: str, depositor: str = "") -> dict:
        """Open and fund an escrow. The signer is the depositor unless given."""
        return await self.transport.post("/escrows", {
            "escrow_id": escrow_id,
            "depositor": depositor or self.vx_id,
            "recipient": recipient,
            "milestones": milestones,
            "token": token,
        })

    async def list_escrows(self, status: str | None = None, page: int = 1,
                           limit: int = DEFAULT_PAGE_LIMIT) -> dict:
        """One page of escrows in id order. Returns {"data", "total", "page", "limit"}."""
        params = {"page": page, "limit": limit}
        if status:
            params["status"] = status
        return await self.transport.get("/escrows", params)

    async def get_escrow(self, escrow_id: int) -> dict:
        return await self.transport.get(f"/escrows/{escrow_id}")

    async def get_state(self, escrow_id: int) -> str:
        resp = await self.transport.get(f"/escrows/{escrow_id}/state")
        return resp["status"]

    async def release_milestone(self, escrow_id: int, milestone_index: int, token_address: str) -> dict:
        """Release one milestone (fee applies). Returns amount/fee/payout."""
        return await self.transport.post(f"/escrows/{escrow_id}/release", {
            "milestone_index": milestone_index,
            "token_address": token_address,
        })

    async def confirm_delivery(self, escrow_id: int, milestone_index: int, buyer: str = "") -> dict:
        return await self.transport.post(f"/escrows/{escrow_id}/confirm", {
            "milestone_index": milestone_index,
            "buyer": buyer or self.vx_id,
        })

    async def cancel_escrow(self, escrow_id: int) -> dict:
        return await self.transport.post(f"/escrows/{escrow_id}/cancel", {})

    async def complete_escrow(self, escrow_id: int) -> dict:
        return await self.transport.post(f"/escrows/{escrow_id}/complete", {})

    async def list_events(self) -> list[dict]:
        resp = await self.transport.get("/events")
        return resp["events"]
