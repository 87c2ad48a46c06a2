"""
FileSessionStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    sessions.json              session id → session record
    session_messages.json      session id → [message records], oldest first

Features:
  - Survives process restarts (unlike InMemorySessionStore)
  - No database server, just the standard json module
  - Writes the touched file after every mutation, or batches writes when
    flush_interval_s > 0
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional

import structlog

from database.store_memory import InMemorySessionStore
from models.schemas import Session, SessionMessage

logger = structlog.get_logger()

SESSIONS = "sessions"
MESSAGES = "session_messages"


class FileSessionStore(InMemorySessionStore):
    """
    InMemorySessionStore whose records are mirrored to JSON files.
    Everything is read once at startup; reads never touch the disk.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._pending: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None

        self._sessions = self._read(SESSIONS)
        self._messages = defaultdict(list, self._read(MESSAGES))
        logger.info("file_store_initialized", data_dir=str(self._data_dir),
                    sessions=len(self._sessions))

    # ── Disk I/O ──────────────────────────────────────────

    def _path(self, name: str) -> Path:
        return self._data_dir / f"{name}.json"

    def _read(self, name: str) -> dict[str, Any]:
        path = self._path(name)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("file_store_load_error", file=path.name, error=str(e))
            return {}
        if not isinstance(data, dict):
            logger.warning("file_store_unexpected_layout", file=path.name)
            return {}
        return data

    def _write(self, name: str):
        records = self._sessions if name == SESSIONS else dict(self._messages)
        path = self._path(name)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(records, indent=2, default=str))
        tmp.replace(path)

    def _changed(self, name: str):
        if self._flush_interval <= 0:
            self._write(name)
            return
        self._pending.add(name)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_later())

    async def _flush_later(self):
        await asyncio.sleep(self._flush_interval)
        names, self._pending = self._pending, set()
        for name in names:
            self._write(name)

    def flush_all(self):
        """Write both files now, regardless of batching."""
        self._pending.clear()
        for name in (SESSIONS, MESSAGES):
            self._write(name)
        logger.info("file_store_flushed_all")

    # ── Writes ────────────────────────────────────────────

    async def create_session(self, session: Session) -> Session:
        session = await super().create_session(session)
        self._changed(SESSIONS)
        return session

    async def save_session(self, session: Session) -> Session:
        session = await super().save_session(session)
        self._changed(SESSIONS)
        return session

    async def add_session_message(self, message: SessionMessage) -> SessionMessage:
        message = await super().add_session_message(message)
        self._changed(MESSAGES)
        return message
