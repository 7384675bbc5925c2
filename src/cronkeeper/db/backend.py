"""Storage-Protokoll der Job-Registry."""
from __future__ import annotations
from typing import Any, Protocol, Sequence, runtime_checkable


@runtime_checkable
class DatabaseBackend(Protocol):
    """Was die JobRegistry von einem Backend braucht.

    Zeilen kommen als Dicts zurück (Spaltenname → Wert). Storage-Fehler
    werden als ``sqlite3.Error`` geworfen; die Registry übersetzt sie.
    """

    async def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Schreibendes Statement inkl. Commit. Rückgabe: betroffene Zeilen."""
        ...

    async def executescript(self, script: str) -> None:
        """Schema-Skript mit mehreren Statements."""
        ...

    async def fetchone(self, query: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        ...

    async def fetchall(self, query: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        ...

    async def close(self) -> None:
        ...

    @property
    def placeholder(self) -> str:
        """Parameter-Platzhalter im SQL ('?' für SQLite)."""
        ...

    @property
    def backend_type(self) -> str:
        ...

    @property
    def in_memory(self) -> bool:
        """True wenn die Daten das Schliessen nicht überleben."""
        ...
