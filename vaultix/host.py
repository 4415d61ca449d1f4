"""Unit-of-work coordinator for the vaultix escrow host.

Bundles the host capabilities the core runs against (storage, token ledger,
event sink) and makes each public operation atomic: either every write,
transfer and event of the call commits, or none does.
"""

import logging
import threading
from contextlib import contextmanager

from protocol import CONTRACT_ADDRESS
from vaultix.events import EventLog, EventSink
from vaultix.ledger import StubLedger, TokenLedger
from vaultix.store import MemoryStore, Store

logger = logging.getLogger(__name__)


class Host:
    """Storage + ledger + events, driven through atomic().

    contract_address is the identity that holds deposited escrow funds.
    """

    def __init__(self, store: Store | None = None, ledger: TokenLedger | None = None,
                 events: EventSink | None = None, contract_address: str = ""):
        self.store = store or MemoryStore()
        self.ledger = ledger or StubLedger()
        self.events = events or EventLog()
        self.contract_address = contract_address or CONTRACT_ADDRESS
        self._lock = threading.RLock()
        self._depth = 0

    def _participants(self):
        return (self.store, self.ledger, self.events)

    @contextmanager
    def atomic(self):
        """Serialize and commit-or-rollback one unit of work.

        Nested calls join the outermost unit. A failing begin() or commit()
        rolls back every participant still open, so none is left mid-unit.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            begun = []  # participants with an open unit, in commit order
            self._depth = 1
            try:
                for p in self._participants():
                    p.begin()
                    begun.append(p)
                yield self
                while begun:
                    begun[0].commit()
                    begun.pop(0)
            except BaseException:
                for p in begun:
                    try:
                        p.rollback()
                    except Exception:
                        logger.exception("rollback failed for %s", type(p).__name__)
                logger.debug("unit of work rolled back")
                raise
            finally:
                self._depth = 0
