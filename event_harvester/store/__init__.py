"""Event store interface and its bundled adapters."""

from .base import EventStore
from .memory_store import InMemoryEventStore
from .sqlite_store import SQLiteEventStore

__all__ = ["EventStore", "InMemoryEventStore", "SQLiteEventStore"]
