"""cronkeeper · Database Abstraction Layer.

Trägt den dauerhaften Teil der Job-Registry. Unterstuetzt SQLite
(Datei oder ``:memory:``).
"""
from cronkeeper.db.backend import DatabaseBackend
from cronkeeper.db.factory import create_backend

__all__ = ["DatabaseBackend", "create_backend"]
