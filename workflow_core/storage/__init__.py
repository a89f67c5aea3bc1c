"""Storage adapters for workflow documents and execution history."""

from .kv_store import KeyValueStore, InMemoryKeyValueStore, SqlAlchemyKeyValueStore
from .history import HistorySink, InMemoryHistorySink, SqlAlchemyHistorySink
