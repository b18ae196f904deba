"""State store implementations."""

from llmkeymanager.infrastructure.state_store.memory_store import InMemoryStateStore
from llmkeymanager.infrastructure.state_store.sqlite_store import SQLStateStore

__all__ = ["InMemoryStateStore", "SQLStateStore"]
