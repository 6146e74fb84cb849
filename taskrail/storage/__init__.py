"""Storage collaborators: abstract interface plus memory and SQLite implementations."""

from taskrail.storage.base import Storage
from taskrail.storage.memory import MemoryStorage
from taskrail.storage.sqlite import SQLiteStorage

__all__ = ["MemoryStorage", "SQLiteStorage", "Storage"]
