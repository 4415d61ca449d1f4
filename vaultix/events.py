"""Append-only event log for the vaultix escrow host.

The core publishes and never reads back. Events published inside a unit of
work only become visible once it commits.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class Event:
    topics: tuple
    data: tuple

    def to_dict(self) -> dict:
        return {"topics": list(self.topics), "data": list(self.data)}


class EventSink(ABC):
    @abstractmethod
    def publish(self, topics: tuple, data: tuple) -> None:
        ...

    def begin(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass


class EventLog(EventSink):
    """In-memory event log. Buffers per unit of work."""

    def __init__(self):
        self._events: list[Event] = []
        self._pending: list[Event] | None = None

    def publish(self, topics: tuple, data: tuple) -> None:
        event = Event(tuple(topics), tuple(data))
        if self._pending is not None:
            self._pending.append(event)
        else:
            self._events.append(event)

    def begin(self) -> None:
        self._pending = []

    def commit(self) -> None:
        if self._pending:
            self._events.extend(self._pending)
        self._pending = None

    def rollback(self) -> None:
        self._pending = None

    def all(self) -> list[Event]:
        return list(self._events)

    def by_topic(self, name: str) -> list[Event]:
        """Committed events whose first topic is `name`."""
        return [e for e in self._events if e.topics and e.topics[0] == name]
