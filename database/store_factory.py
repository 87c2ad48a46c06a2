"""
Store Factory — Create the right session store backend from configuration.

Configuration in settings.yaml:
    database:
      # Session store backend
      #   "memory"   — In-memory dicts (development, testing)
      #   "file"     — JSON files on disk (small deployments, demos)
      store_backend: "memory"

      # For file backend: directory path
      store_file_dir: "./data"

Usage:
    from database.store_factory import create_store
    store = create_store(config)     # one store per application, passed in explicitly
"""
from __future__ import annotations

from typing import Optional

import structlog

from database.store_base import BaseSessionStore

logger = structlog.get_logger()


def create_store(config: Optional[dict] = None) -> BaseSessionStore:
    """
    Factory: create the configured session store backend.

    Args:
        config: dict with keys:
            store_backend: "memory" | "file"  (default: "memory")
            store_file_dir: str (for file backend, default: "./data")
    """
    config = config or {}
    backend = config.get("store_backend", "memory")

    if backend == "file":
        from database.store_file import FileSessionStore
        data_dir = config.get("store_file_dir", "./data")
        store = FileSessionStore(data_dir=data_dir)
        logger.info("store_created", backend="file", data_dir=data_dir)
        return store

    if backend != "memory":
        logger.warning("unknown_store_backend", backend=backend)

    from database.store_memory import InMemorySessionStore
    store = InMemorySessionStore()
    logger.info("store_created", backend="memory")
    return store
