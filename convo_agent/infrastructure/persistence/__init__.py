from .durable_store import DurableStore, InMemoryDurableStore
from .sqlite_store import SqliteDurableStore
