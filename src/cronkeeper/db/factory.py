"""Database Backend Factory."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cronkeeper.db.sqlite_backend import MEMORY, SQLiteBackend

if TYPE_CHECKING:
    from cronkeeper.config import CronkeeperConfig

logger = logging.getLogger("cronkeeper.db.factory")


def create_backend(config: CronkeeperConfig) -> SQLiteBackend:
    """Erstellt das passende Database-Backend basierend auf der Konfiguration.

    Args:
        config: CronkeeperConfig. Prueft ``config.registry.backend``.

    Returns:
        SQLiteBackend-Instanz (Datei oder ``:memory:``).
    """
    backend_name = config.registry.backend

    if backend_name == "memory":
        logger.info("Database-Backend: SQLite (in-memory)")
        return SQLiteBackend(MEMORY)

    if backend_name == "sqlite":
        db_path = config.db_path
        logger.info("Database-Backend: SQLite (%s)", db_path)
        return SQLiteBackend(db_path)

    raise ValueError(f"Unbekanntes Database-Backend: {backend_name}")
