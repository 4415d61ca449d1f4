"""Fungible-token ledger backends for the vaultix escrow host.

The escrow core only ever calls TokenLedger.transfer(). Which backend moves
the tokens is the host's business:
- StubLedger: records transfers, never fails (unit tests)
- SimLedger: tracks per-token balances in a Store, enforces funds

A TransferError from any backend aborts the enclosing operation; the Host
rolls back the ledger together with the escrow state.
"""

import logging
from abc import ABC, abstractmethod

from vaultix.store import MemoryStore, Store

logger = logging.getLogger(__name__)


class TransferError(Exception):
    """A token transfer was refused by the ledger."""


class TokenLedger(ABC):
    """Abstract token ledger. Host injects one of these into EscrowManager."""

    @abstractmethod
    def transfer(self, token: str, from_account: str, to_account: str, amount: int) -> None:
        """Move `amount` units of `token`. Raises TransferError on failure."""
        ...

    @abstractmethod
    def balance(self, token: str, account: str) -> int:
        ...

    def begin(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass


class StubLedger(TokenLedger):
    """No-op ledger for testing. Every transfer succeeds and is logged."""

    def __init__(self):
        self.transfers: list[dict] = []  # committed transfers, for test assertions
        self._pending: list[dict] | None = None

    def transfer(self, token: str, from_account: str, to_account: str, amount: int) -> None:
        entry = {"token": token, "from": from_account, "to": to_account, "amount": amount}
        if self._pending is not None:
            self._pending.append(entry)
        else:
            self.transfers.append(entry)

    def balance(self, token: str, account: str) -> int:
        """Net amount received by `account` across committed transfers."""
        total = 0
        for t in self.transfers:
            if t["token"] != token:
                continue
            if t["to"] == account:
                total += t["amount"]
            if t["from"] == account:
                total -= t["amount"]
        return total

    def begin(self) -> None:
        self._pending = []

    def commit(self) -> None:
        if self._pending:
            self.transfers.extend(self._pending)
        self._pending = None

    def rollback(self) -> None:
        self._pending = None


class SimLedger(TokenLedger):
    """Simulated token ledger for development and integration testing.

    Tracks real balances in a Store. Enforces:
    - No negative transfers
    - Insufficient balance errors
    - Zero-amount transfers are accepted as no-ops

    Usage:
        sim = SimLedger()
        sim.mint("vx_token", "vx_alice", 10000)
        sim.transfer("vx_token", "vx_alice", "vx_bob", 2500)
        sim.balance("vx_token", "vx_bob")  # 2500
    """

    def __init__(self, store: Store | None = None):
        self.store = store or MemoryStore()

    @staticmethod
    def _key(token: str, account: str) -> str:
        return f"bal:{token}:{account}"

    def balance(self, token: str, account: str) -> int:
        return int(self.store.get(self._key(token, account), 0))

    def transfer(self, token: str, from_account: str, to_account: str, amount: int) -> None:
        if amount < 0:
            raise TransferError(f"negative transfer amount: {amount}")
        if amount == 0:
            return
        have = self.balance(token, from_account)
        if have < amount:
            raise TransferError(
                f"Insufficient balance: {from_account} has {have} {token}, need {amount}"
            )
        self.store.set(self._key(token, from_account), have - amount)
        self.store.set(self._key(token, to_account), self.balance(token, to_account) + amount)
        logger.debug("transfer %s %s: %s -> %s", amount, token, from_account, to_account)

    # --- SimLedger-only methods (for test setup) ---

    def mint(self, token: str, account: str, amount: int) -> None:
        """Credit an account with fresh tokens (simulates the token admin)."""
        if amount < 0:
            raise ValueError(f"cannot mint a negative amount: {amount}")
        self.store.set(self._key(token, account), self.balance(token, account) + amount)

    def begin(self) -> None:
        self.store.begin()

    def commit(self) -> None:
        self.store.commit()

    def rollback(self) -> None:
        self.store.rollback()
