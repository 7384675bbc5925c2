"""Job-Registry: dauerhafte Job-Metadaten plus prozesslokale Timer-Handles.

Zwei Schichten:
  - Metadaten (id, description, schedule, state, Zeitstempel) liegen in
    der Tabelle ``cron_jobs`` eines DatabaseBackend.
  - Live-Handles (CronTimer) liegen nur in einer In-Memory-Tabelle dieses
    Prozesses und werden beim Schliessen verworfen.

Die Registry plant nichts selbst. Sie bietet create/read/update und
einen Lock pro Job, unter dem der Scheduler Übergänge serialisiert.
"""

from __future__ import annotations

import asyncio
import sqlite3
from typing import TYPE_CHECKING, Any

from cronkeeper.errors import DuplicateJobError, JobNotFoundError, RegistryIOError
from cronkeeper.models import DEFAULT_DESCRIPTION, JobRecord, JobState, _utc_now
from cronkeeper.utils.logging import get_logger

if TYPE_CHECKING:
    from cronkeeper.db.backend import DatabaseBackend

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cron_jobs (
    id          TEXT PRIMARY KEY,
    description TEXT NOT NULL,
    schedule    TEXT NOT NULL DEFAULT '',
    state       TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cron_jobs_state ON cron_jobs(state);
"""

_COLUMNS = "id, description, schedule, state, created_at, updated_at"


class JobRegistry:
    """Keyed Store für JobRecords.

    Attributes:
        backend: Das DatabaseBackend für die dauerhafte Schicht.
    """

    def __init__(self, backend: DatabaseBackend) -> None:
        self.backend = backend
        self._handles: dict[str, Any] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def active_handles(self) -> dict[str, Any]:
        """Kopie der Side-Table job_id → CronTimer."""
        return dict(self._handles)

    async def open(self) -> None:
        """Legt das Schema an. Idempotent."""
        if self._opened:
            return
        try:
            await self.backend.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise RegistryIOError(f"Schema konnte nicht angelegt werden: {exc}") from exc
        self._opened = True
        log.debug(
            "job_registry_opened",
            backend=self.backend.backend_type,
            in_memory=self.backend.in_memory,
        )

    async def close(self) -> None:
        """Verwirft alle Live-Handles und schliesst das Backend."""
        self._handles.clear()
        self._locks.clear()
        if self._opened:
            await self.backend.close()
            self._opened = False
        log.debug("job_registry_closed")

    def lock(self, job_id: str) -> asyncio.Lock:
        """Lock für alle Übergänge eines Jobs (``async with registry.lock(id)``)."""
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    def release_handle(self, job_id: str) -> None:
        """Entfernt Live-Handle und Lock eines Jobs.

        Ohne Handle ist kein weiterer Übergang erreichbar.
        """
        self._handles.pop(job_id, None)
        self._locks.pop(job_id, None)

    # === CRUD ===

    async def store(
        self,
        job_id: str,
        description: str | None,
        handle: Any,
        *,
        schedule: str = "",
    ) -> JobRecord:
        """Legt einen neuen Job im State ``pending`` an.

        Raises:
            DuplicateJobError: Wenn die ID bereits existiert.
            RegistryIOError: Bei Storage-Fehlern.
        """
        now = _utc_now()
        job = JobRecord(
            id=job_id,
            description=description or DEFAULT_DESCRIPTION,
            schedule=schedule,
            state=JobState.PENDING,
            created_at=now,
            updated_at=now,
        )
        ph = self.backend.placeholder
        try:
            await self.backend.execute(
                f"INSERT INTO cron_jobs ({_COLUMNS}) VALUES ({', '.join([ph] * 6)})",
                self._to_row(job),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateJobError(details={"job_id": job_id}) from exc
        except sqlite3.Error as exc:
            raise RegistryIOError(
                f"Job konnte nicht gespeichert werden: {exc}", details={"job_id": job_id}
            ) from exc

        if handle is not None:
            self._handles[job_id] = handle
        job.handle = handle
        return job

    async def get(self, job_id: str) -> JobRecord | None:
        """Lädt einen Job. Unbekannte ID → ``None`` (kein Default-Record)."""
        ph = self.backend.placeholder
        try:
            row = await self.backend.fetchone(
                f"SELECT {_COLUMNS} FROM cron_jobs WHERE id = {ph}", (job_id,)
            )
        except sqlite3.Error as exc:
            raise RegistryIOError(
                f"Job konnte nicht gelesen werden: {exc}", details={"job_id": job_id}
            ) from exc
        if row is None:
            return None
        return self._from_row(row)

    async def update(self, job: JobRecord) -> JobRecord:
        """Persistiert einen bereits veränderten Record.

        State und ``updated_at`` setzt der Aufrufer.

        Raises:
            JobNotFoundError: Wenn die ID unbekannt ist.
            RegistryIOError: Bei Storage-Fehlern.
        """
        ph = self.backend.placeholder
        try:
            rowcount = await self.backend.execute(
                f"UPDATE cron_jobs SET description = {ph}, schedule = {ph}, state = {ph}, "
                f"updated_at = {ph} WHERE id = {ph}",
                (
                    job.description,
                    job.schedule,
                    str(job.state),
                    job.updated_at.isoformat(),
                    job.id,
                ),
            )
        except sqlite3.Error as exc:
            raise RegistryIOError(
                f"Job konnte nicht aktualisiert werden: {exc}", details={"job_id": job.id}
            ) from exc
        if rowcount == 0:
            raise JobNotFoundError(details={"job_id": job.id})
        job.handle = self._handles.get(job.id)
        return job

    async def list_jobs(self, state: JobState | None = None) -> list[JobRecord]:
        """Alle Jobs, optional nach State gefiltert (älteste zuerst)."""
        ph = self.backend.placeholder
        query = f"SELECT {_COLUMNS} FROM cron_jobs"
        params: tuple[Any, ...] = ()
        if state is not None:
            query += f" WHERE state = {ph}"
            params = (str(state),)
        query += " ORDER BY created_at, id"
        try:
            rows = await self.backend.fetchall(query, params)
        except sqlite3.Error as exc:
            raise RegistryIOError(f"Jobs konnten nicht gelesen werden: {exc}") from exc
        return [self._from_row(row) for row in rows]

    # === Mapping ===

    @staticmethod
    def _to_row(job: JobRecord) -> tuple[Any, ...]:
        return (
            job.id,
            job.description,
            job.schedule,
            str(job.state),
            job.created_at.isoformat(),
            job.updated_at.isoformat(),
        )

    def _from_row(self, row: dict[str, Any]) -> JobRecord:
        job = JobRecord.model_validate(row)
        job.handle = self._handles.get(job.id)
        return job
