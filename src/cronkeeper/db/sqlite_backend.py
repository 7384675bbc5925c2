"""SQLite-Backend der Job-Registry.

Eine Verbindung pro Backend. Die async-Methoden laufen über
``asyncio.to_thread``; ein Thread-Lock hält Statement und Commit
zusammen, weil sich Worker-Threads die Verbindung teilen.

``:memory:`` ergibt eine prozesslokale Datenbank, die beim
Schliessen verloren geht.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Sequence

logger = logging.getLogger("cronkeeper.db.sqlite")

MEMORY = ":memory:"


class SQLiteBackend:
    """sqlite3-Verbindung mit Dict-Zeilen und lazy Reconnect."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._mutex = threading.Lock()
        with self._mutex:
            self._connect()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def in_memory(self) -> bool:
        return self._db_path == MEMORY

    @property
    def conn(self) -> sqlite3.Connection:
        with self._mutex:
            return self._connect()

    @property
    def placeholder(self) -> str:
        return "?"

    @property
    def backend_type(self) -> str:
        return "sqlite"

    def _connect(self) -> sqlite3.Connection:
        # Aufrufer hält self._mutex
        if self._conn is not None:
            return self._conn
        if self.in_memory:
            conn = sqlite3.connect(MEMORY, check_same_thread=False)
        else:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=5000")
        self._conn = conn
        logger.info("SQLite-Verbindung hergestellt: %s", self._db_path)
        return conn

    # ── Sync-Teil (läuft in Worker-Threads) ─────────────────────

    def _run_write(self, query: str, params: Sequence[Any]) -> int:
        with self._mutex:
            conn = self._connect()
            cursor = conn.execute(query, params)
            conn.commit()
            return cursor.rowcount

    def _run_script(self, script: str) -> None:
        with self._mutex:
            self._connect().executescript(script)

    def _run_query(self, query: str, params: Sequence[Any], *, one: bool) -> Any:
        with self._mutex:
            cursor = self._connect().execute(query, params)
            if one:
                row = cursor.fetchone()
                return None if row is None else dict(row)
            return [dict(r) for r in cursor.fetchall()]

    def _disconnect(self) -> None:
        with self._mutex:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
        logger.info("SQLite-Verbindung geschlossen: %s", self._db_path)

    # ── Async-API ────────────────────────────────────────────────

    async def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Schreibendes Statement, committed. Gibt die Anzahl betroffener Zeilen zurück."""
        return await asyncio.to_thread(self._run_write, query, params)

    async def executescript(self, script: str) -> None:
        await asyncio.to_thread(self._run_script, script)

    async def fetchone(self, query: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._run_query, query, params, one=True)

    async def fetchall(self, query: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._run_query, query, params, one=False)

    async def close(self) -> None:
        """Schliesst die Verbindung. Der nächste Zugriff verbindet neu."""
        await asyncio.to_thread(self._disconnect)
