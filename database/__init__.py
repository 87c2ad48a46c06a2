"""
Database layer — Session persistence.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  session = await store.get_session("abc123")
"""
from database.store_base import BaseSessionStore
from database.store_memory import InMemorySessionStore
from database.store_file import FileSessionStore
from database.store_factory import create_store

__all__ = [
    "BaseSessionStore",
    "InMemorySessionStore", "FileSessionStore",
    "create_store",
]
