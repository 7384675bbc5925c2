"""Cron-Engine: Zeitgesteuerte Jobs mit Zustandsverfolgung.

Nutzt APScheduler 3.x (AsyncIOScheduler) über CronTimer. Jeder
eingereichte Job bekommt eine neue ID, einen Timer und einen Record in
der JobRegistry. Ticks schreiben den Übergang nach ``running`` bevor die
Job-Funktion läuft, der Stop-Hook schreibt ``stopped`` bevor
``on_stopped`` läuft.

Schreibfehler der Registry auf dem Tick- und Stop-Pfad werden geloggt
und verschluckt: die Ausführung des Jobs hat Vorrang vor der Buchhaltung.
"""

from __future__ import annotations

import asyncio
import inspect
from functools import partial
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cronkeeper.config import CronkeeperConfig, SchedulerConfig
from cronkeeper.cron.registry import JobRegistry
from cronkeeper.cron.timer import CronTimer, Schedule, TimerCallback, describe_schedule
from cronkeeper.db.factory import create_backend
from cronkeeper.errors import (
    CronkeeperError,
    InvalidJobTypeError,
    InvalidScheduleError,
    InvalidTransitionError,
    JobNotFoundError,
    MissingJobError,
    MissingScheduleError,
    NoActiveHandleError,
    SchedulerNotRunningError,
)
from cronkeeper.models import JobRecord, JobState, _new_id
from cronkeeper.utils.logging import get_logger

if TYPE_CHECKING:
    from datetime import datetime

log = get_logger(__name__)


class CronScheduler:
    """Async Scheduler für wiederkehrende Jobs.

    Die Registry wird vom Host erzeugt und übergeben; der Scheduler
    besitzt nur den APScheduler und die laufenden Timer.

    Attributes:
        registry: JobRegistry für Records und Live-Handles.
        config: SchedulerConfig (Zeitzone, Overlap-Policy, Misfire).
        running: Ob der Scheduler läuft.
    """

    def __init__(
        self,
        registry: JobRegistry,
        config: SchedulerConfig | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or SchedulerConfig()
        self.running = False
        self._scheduler: AsyncIOScheduler | None = None
        # Nicht abgewartete Ausführungen (allow_overlap=True)
        self._background: set[asyncio.Future[Any]] = set()

    async def start(self) -> None:
        """Öffnet die Registry und startet den APScheduler."""
        if self.running:
            log.warning("cron_scheduler_already_running")
            return

        await self.registry.open()
        self._scheduler = AsyncIOScheduler(timezone=self.config.timezone)
        self._scheduler.start()
        self.running = True
        log.info(
            "cron_scheduler_started",
            timezone=self.config.timezone,
            allow_overlap=self.config.allow_overlap,
        )

    async def shutdown(self) -> None:
        """Stoppt den APScheduler und verwirft alle Live-Handles.

        Stop-Hooks laufen dabei nicht; die Records behalten ihren State.
        Laufende Ticks und nicht abgewartete Ausführungen werden
        abgebrochen und abgewartet, danach schreibt kein geplanter Tick
        mehr in die Registry. Die Registry selbst bleibt offen und gehört dem Host.
        """
        if not self.running:
            return

        pending: list[asyncio.Future[Any]] = []
        for job_id, handle in self.registry.active_handles.items():
            pending.extend(handle.detach())
            self.registry.release_handle(job_id)

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        for fut in self._background:
            fut.cancel()
            pending.append(fut)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._background.clear()

        self.running = False
        log.info("cron_scheduler_stopped")

    # === Öffentliche API ===

    async def submit(
        self,
        description: str | None,
        schedule: Schedule | None,
        work: TimerCallback | None,
        on_stopped: TimerCallback | None = None,
    ) -> JobRecord:
        """Reicht einen wiederkehrenden Job ein.

        Args:
            description: Freitext. Leer → Default-Beschreibung.
            schedule: Cron-Ausdruck, Alias, ``@every``-Intervall oder datetime.
            work: Zero-Arg-Callable, optional async.
            on_stopped: Optionaler Zero-Arg-Callback nach dem Stop-Übergang.

        Returns:
            Der gespeicherte JobRecord (State ``pending``).

        Raises:
            MissingScheduleError: Kein Schedule.
            MissingJobError: Keine Job-Funktion.
            InvalidJobTypeError: Job-Funktion oder on_stopped nicht aufrufbar.
            InvalidScheduleError: Schedule nicht interpretierbar.
            SchedulerNotRunningError: ``start()`` wurde nicht aufgerufen.
        """
        description = description or self.config.default_description

        if schedule is None or (isinstance(schedule, str) and not schedule.strip()):
            log.error("cron_job_rejected", reason="missing_schedule", description=description)
            raise MissingScheduleError()

        if work is None:
            log.error("cron_job_rejected", reason="missing_job", description=description)
            raise MissingJobError()

        if not callable(work):
            log.error("cron_job_rejected", reason="job_not_callable", description=description)
            raise InvalidJobTypeError(details={"type": type(work).__name__})

        if on_stopped is not None and not callable(on_stopped):
            log.error("cron_job_rejected", reason="on_stopped_not_callable", description=description)
            raise InvalidJobTypeError(
                "on_stopped must be a function",
                details={"type": type(on_stopped).__name__},
            )

        if self._scheduler is None:
            raise SchedulerNotRunningError()

        job_id = _new_id()
        try:
            timer = CronTimer(
                self._scheduler,
                schedule,
                on_tick=partial(self._handle_tick, job_id, work),
                on_complete=partial(self._handle_stop, job_id, on_stopped),
                timer_id=job_id,
                timezone=self.config.timezone,
                misfire_grace_time=self.config.misfire_grace_seconds,
                coalesce=self.config.coalesce,
            )
        except ValueError as exc:
            log.error("cron_job_rejected", reason="invalid_schedule", schedule=str(schedule), error=str(exc))
            raise InvalidScheduleError(str(exc), details={"schedule": str(schedule)}) from exc

        schedule_text = describe_schedule(schedule)
        try:
            saved = await self.registry.store(job_id, description, timer, schedule=schedule_text)
        except CronkeeperError as exc:
            # Timer startet trotzdem; der Record existiert dann nur im Speicher
            log.warning("cron_job_store_failed", job_id=job_id, error=str(exc))
            saved = JobRecord(
                id=job_id,
                description=description,
                schedule=schedule_text,
                handle=timer,
            )

        timer.start()
        log.info("cron_job_submitted", job_id=job_id, description=description, schedule=schedule_text)
        return saved

    async def abort(self, job_id: str) -> None:
        """Signalisiert dem Timer eines Jobs, anzuhalten.

        Kehrt sofort zurück. Übergang nach ``stopped`` und ``on_stopped``
        laufen danach asynchron.

        Raises:
            JobNotFoundError: Kein Record für ``job_id``.
            NoActiveHandleError: Record ohne Live-Handle in diesem Prozess.
        """
        job = await self._require_handle(job_id)
        job.handle.stop()
        log.info("cron_job_abort_requested", job_id=job_id)

    async def trigger_now(self, job_id: str) -> None:
        """Löst einen Tick sofort aus (unabhängig vom Schedule).

        Läuft gerade ein Tick desselben Jobs, wird erst dessen Ende abgewartet.

        Raises:
            JobNotFoundError: Kein Record für ``job_id``.
            NoActiveHandleError: Record ohne Live-Handle in diesem Prozess.
        """
        job = await self._require_handle(job_id)
        await job.handle.fire_now()

    async def get_job(self, job_id: str) -> JobRecord | None:
        """Record eines Jobs oder None."""
        return await self.registry.get(job_id)

    async def list_jobs(self, state: JobState | None = None) -> list[JobRecord]:
        """Listet alle Jobs, optional nach State gefiltert."""
        return await self.registry.list_jobs(state)

    def get_next_run_times(self) -> dict[str, datetime | None]:
        """Gibt die nächsten Ausführungszeiten aller Live-Timer zurück.

        Returns:
            Dict: Job-ID → nächste Ausführungszeit (oder None).
        """
        return {
            job_id: handle.next_run_time
            for job_id, handle in self.registry.active_handles.items()
        }

    # === Tick / Stop ===

    async def _handle_tick(self, job_id: str, work: TimerCallback) -> None:
        log.info("cron_job_started", job_id=job_id)
        try:
            await self._set_state(job_id, JobState.RUNNING)
        except CronkeeperError as exc:
            log.warning("cron_job_state_update_failed", job_id=job_id, state="running", error=str(exc))

        try:
            result = work()
            if inspect.isawaitable(result):
                if self.config.allow_overlap:
                    self._spawn(job_id, result)
                else:
                    await result
        except Exception:
            log.exception("cron_job_failed", job_id=job_id)

    async def _handle_stop(self, job_id: str, on_stopped: TimerCallback | None) -> None:
        log.info("cron_job_stopped", job_id=job_id)
        try:
            await self._set_state(job_id, JobState.STOPPED)
        except CronkeeperError as exc:
            log.warning("cron_job_state_update_failed", job_id=job_id, state="stopped", error=str(exc))

        self.registry.release_handle(job_id)

        if on_stopped is None:
            return
        try:
            result = on_stopped()
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.exception("cron_job_on_stopped_failed", job_id=job_id)

    async def _set_state(self, job_id: str, state: JobState) -> JobRecord:
        async with self.registry.lock(job_id):
            job = await self.registry.get(job_id)
            if job is None:
                raise JobNotFoundError(details={"job_id": job_id})
            if job.state == JobState.STOPPED:
                raise InvalidTransitionError(
                    f"Job {job_id} ist bereits gestoppt",
                    details={"job_id": job_id, "target": str(state)},
                )
            job.touch(state)
            return await self.registry.update(job)

    async def _require_handle(self, job_id: str) -> JobRecord:
        job = await self.registry.get(job_id)
        if job is None:
            raise JobNotFoundError(details={"job_id": job_id})
        if job.handle is None:
            raise NoActiveHandleError(details={"job_id": job_id})
        return job

    def _spawn(self, job_id: str, awaitable: Any) -> None:
        fut = asyncio.ensure_future(awaitable)
        self._background.add(fut)

        def _done(f: asyncio.Future[Any]) -> None:
            self._background.discard(f)
            if not f.cancelled() and f.exception() is not None:
                log.error("cron_job_failed", job_id=job_id, error=repr(f.exception()))

        fut.add_done_callback(_done)


def create_scheduler(config: CronkeeperConfig | None = None) -> CronScheduler:
    """Baut Backend, Registry und Scheduler aus einer Konfiguration.

    Der Host startet mit ``await scheduler.start()`` und räumt mit
    ``await scheduler.shutdown()`` und ``await scheduler.registry.close()`` auf.
    """
    config = config or CronkeeperConfig()
    registry = JobRegistry(create_backend(config))
    return CronScheduler(registry, config.scheduler)
