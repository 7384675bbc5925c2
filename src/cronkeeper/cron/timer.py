"""Timer-Primitive: ein wiederkehrender Timer über APScheduler 3.x.

Ein CronTimer verbindet einen Schedule-Ausdruck mit zwei Callbacks:
``on_tick`` bei jedem Feuern und ``on_complete`` genau einmal, wenn der
Timer endet (``stop()`` oder erschöpfter Schedule, z.B. einmaliges Datum).

Mehrere Timer teilen sich einen AsyncIOScheduler. Jeder Timer ist ein
APScheduler-Job mit ``max_instances=1``; zusätzlich serialisiert ein Lock
pro Timer geplante und manuelle Ticks (``fire_now``). Zwei Ticks desselben
Timers laufen nie gleichzeitig.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import re
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from apscheduler.events import EVENT_ALL_JOBS_REMOVED, EVENT_JOB_REMOVED
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from cronkeeper.utils.logging import get_logger

if TYPE_CHECKING:
    from apscheduler.events import SchedulerEvent
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

log = get_logger(__name__)

# Zero-Arg-Callable, optional async
TimerCallback = Callable[[], Awaitable[Any] | Any]

Schedule = str | datetime | BaseTrigger

_EVERY_RE = re.compile(r"@every\s+(\d+)\s*([smh])", re.IGNORECASE)
_EVERY_UNITS = {"s": "seconds", "m": "minutes", "h": "hours"}

_ALIASES: dict[str, str] = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * sun",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}


# Cron-Wochentage: 0 und 7 = Sonntag. APScheduler zählt ab Montag = 0,
# deshalb werden numerische Werte in Namen übersetzt.
_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")
_NUMERIC_DOW_RE = re.compile(r"\*|[0-7](?:-[0-7])?")


def _cron_day_of_week(field: str) -> str:
    """Übersetzt ein Cron-Wochentagsfeld in APScheduler-Syntax.

    Numerische Einträge, Bereiche und Schritte (``0``, ``1-5``, ``*/2``)
    werden zu Namenslisten aufgelöst, Namen (``mon-fri``) bleiben unverändert.

    Raises:
        ValueError: Bei absteigendem Bereich oder ungültigem Schritt.
    """
    days: list[str] = []
    for part in field.split(","):
        span, _, step_text = part.partition("/")
        if not _NUMERIC_DOW_RE.fullmatch(span):
            days.append(part)
            continue
        if span == "*" and not step_text:
            return "*"
        if step_text and not (step_text.isdigit() and int(step_text) > 0):
            raise ValueError(f"Ungültiger Schritt im Wochentagsfeld: '{field}'")
        step = int(step_text) if step_text else 1

        if span == "*":
            first, last = 0, 6
        else:
            first_text, _, last_text = span.partition("-")
            first = int(first_text)
            if last_text:
                last = int(last_text)
            else:
                last = 6 if step_text else first
        if first > last:
            raise ValueError(f"Absteigender Wochentagsbereich: '{field}'")
        days.extend(_WEEKDAY_NAMES[day] for day in range(first, last + 1, step))
    return ",".join(dict.fromkeys(days))


def _parse_cron_fields(expression: str) -> dict[str, str]:
    """Parst einen Cron-Ausdruck in APScheduler-kompatible Felder.

    Unterstützt:
      - 5 Felder: minute hour day month day_of_week
      - 6 Felder: second minute hour day month day_of_week

    Wochentage folgen Cron (0 = Sonntag), siehe ``_cron_day_of_week``.

    Args:
        expression: Cron-Ausdruck (z.B. "0 7 * * 1-5" oder "*/5 * * * * *")

    Returns:
        Dict mit APScheduler CronTrigger-Feldern.

    Raises:
        ValueError: Bei falscher Feldanzahl.
    """
    parts = expression.strip().split()
    if len(parts) == 5:
        return {
            "minute": parts[0],
            "hour": parts[1],
            "day": parts[2],
            "month": parts[3],
            "day_of_week": _cron_day_of_week(parts[4]),
        }
    if len(parts) == 6:
        return {
            "second": parts[0],
            "minute": parts[1],
            "hour": parts[2],
            "day": parts[3],
            "month": parts[4],
            "day_of_week": _cron_day_of_week(parts[5]),
        }
    msg = f"Cron-Ausdruck muss 5 oder 6 Felder haben, hat {len(parts)}: '{expression}'"
    raise ValueError(msg)


def parse_schedule(schedule: Schedule, timezone: str = "UTC") -> BaseTrigger:
    """Übersetzt einen Schedule-Ausdruck in einen APScheduler-Trigger.

    Args:
        schedule: Cron-Ausdruck (5/6 Felder), Alias (``@daily``),
            Intervall (``@every 30s``), ``datetime`` für einmalige
            Ausführung oder ein fertiger Trigger.
        timezone: Zeitzone für Cron- und Intervall-Trigger.

    Raises:
        ValueError: Bei ungültigem Ausdruck.
    """
    if isinstance(schedule, BaseTrigger):
        return schedule
    if isinstance(schedule, datetime):
        return DateTrigger(run_date=schedule, timezone=timezone)
    if not isinstance(schedule, str):
        raise ValueError(f"Ungültiger Schedule-Typ: {type(schedule).__name__}")

    text = schedule.strip()
    text = _ALIASES.get(text.lower(), text)

    match = _EVERY_RE.fullmatch(text)
    if match:
        amount = int(match.group(1))
        if amount <= 0:
            raise ValueError(f"Intervall muss positiv sein: '{schedule}'")
        unit = _EVERY_UNITS[match.group(2).lower()]
        return IntervalTrigger(**{unit: amount}, timezone=timezone)

    fields = _parse_cron_fields(text)
    return CronTrigger(**fields, timezone=timezone)


def describe_schedule(schedule: Schedule) -> str:
    """Textform eines Schedules für Registry und Logs."""
    if isinstance(schedule, datetime):
        return schedule.isoformat()
    return str(schedule)


class CronTimer:
    """Wiederkehrender Timer mit Start/Stop-Handle.

    Attributes:
        timer_id: ID des APScheduler-Jobs.
        trigger: Der aufgelöste APScheduler-Trigger.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        schedule: Schedule,
        on_tick: TimerCallback,
        on_complete: TimerCallback | None = None,
        *,
        start: bool = False,
        timer_id: str | None = None,
        timezone: str = "UTC",
        misfire_grace_time: int = 1,
        coalesce: bool = True,
    ) -> None:
        self._scheduler = scheduler
        self.trigger = parse_schedule(schedule, timezone)
        self.timer_id = timer_id or uuid.uuid4().hex
        self._on_tick = on_tick
        self._on_complete = on_complete
        self._misfire_grace_time = misfire_grace_time
        self._coalesce = coalesce

        self._loop: asyncio.AbstractEventLoop | None = None
        self._started = False
        self._completed = False
        self._detached = False
        self._complete_future: Any = None
        self._done = asyncio.Event()
        self._listening = False
        # Ein Tick zur Zeit, auch bei manuellem fire_now()
        self._tick_lock = asyncio.Lock()
        # Von APScheduler gestartete, noch laufende Ticks
        self._tick_tasks: set[asyncio.Task[Any]] = set()

        if start:
            self.start()

    @property
    def running(self) -> bool:
        """True zwischen ``start()`` und dem Ende des Timers."""
        return self._started and not self._completed

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def next_run_time(self) -> datetime | None:
        """Nächste Ausführungszeit laut APScheduler (oder None)."""
        if not self.running:
            return None
        job = self._scheduler.get_job(self.timer_id)
        if job is None:
            return None
        return getattr(job, "next_run_time", None)

    def start(self) -> None:
        """Plant den Timer im Scheduler ein. Idempotent."""
        if self._started:
            return
        if self._completed:
            log.warning("cron_timer_restart_ignored", timer_id=self.timer_id)
            return

        self._loop = asyncio.get_running_loop()
        self._scheduler.add_listener(self._on_scheduler_event, EVENT_JOB_REMOVED | EVENT_ALL_JOBS_REMOVED)
        self._listening = True
        self._scheduler.add_job(
            self._fire,
            trigger=self.trigger,
            id=self.timer_id,
            name=self.timer_id,
            max_instances=1,
            coalesce=self._coalesce,
            misfire_grace_time=self._misfire_grace_time,
            replace_existing=False,
        )
        self._started = True
        log.debug("cron_timer_started", timer_id=self.timer_id, trigger=str(self.trigger))

    def stop(self) -> None:
        """Hält den Timer an. Der Stop-Callback läuft asynchron danach.

        Idempotent: nach dem ersten Stop passiert nichts mehr.
        """
        if self._completed:
            return
        if not self._started:
            self._complete()
            return
        # Der Listener feuert synchron innerhalb von remove_job
        with contextlib.suppress(JobLookupError):
            self._scheduler.remove_job(self.timer_id)
        self._complete()

    def detach(self) -> list[asyncio.Task[Any]]:
        """Löst den Timer vom Scheduler ohne den Stop-Callback auszuführen.

        Für das Herunterfahren des Host-Prozesses. Laufende geplante Ticks
        werden abgebrochen.

        Returns:
            Die abgebrochenen Tick-Tasks, damit der Aufrufer sie abwarten kann.
        """
        if self._completed:
            return []
        self._completed = True
        self._detached = True
        if self._listening:
            with contextlib.suppress(ValueError):
                self._scheduler.remove_listener(self._on_scheduler_event)
            self._listening = False
        self._done.set()

        current = asyncio.current_task()
        cancelled = [task for task in self._tick_tasks if task is not current and not task.done()]
        for task in cancelled:
            task.cancel()
        return cancelled

    async def wait_stopped(self, timeout: float | None = None) -> bool:
        """Wartet bis der Stop-Callback vollständig gelaufen ist.

        Returns:
            True wenn der Timer innerhalb von ``timeout`` beendet wurde.
        """
        try:
            await asyncio.wait_for(self._done.wait(), timeout)
        except TimeoutError:
            return False
        return True

    async def fire_now(self) -> None:
        """Führt einen Tick sofort aus, unabhängig vom Schedule.

        Läuft gerade ein Tick, wird gewartet bis er fertig ist.
        """
        await self._run_tick()

    # === Interna ===

    async def _fire(self) -> None:
        # Einstieg für APScheduler
        task = asyncio.current_task()
        if task is not None:
            self._tick_tasks.add(task)
        try:
            await self._run_tick()
        except asyncio.CancelledError:
            if not self._detached:
                raise
            # detach() beim Herunterfahren
            log.debug("cron_timer_tick_cancelled", timer_id=self.timer_id)
        finally:
            if task is not None:
                self._tick_tasks.discard(task)

    async def _run_tick(self) -> None:
        async with self._tick_lock:
            result = self._on_tick()
            if inspect.isawaitable(result):
                await result

    def _on_scheduler_event(self, event: SchedulerEvent) -> None:
        if event.code == EVENT_ALL_JOBS_REMOVED or getattr(event, "job_id", None) == self.timer_id:
            self._complete()

    def _complete(self) -> None:
        if self._completed:
            return
        self._completed = True
        if self._listening:
            with contextlib.suppress(ValueError):
                self._scheduler.remove_listener(self._on_scheduler_event)
            self._listening = False

        loop = self._loop or asyncio.get_running_loop()
        self._complete_future = asyncio.run_coroutine_threadsafe(self._run_complete(), loop)
        log.debug("cron_timer_stopped", timer_id=self.timer_id)

    async def _run_complete(self) -> None:
        try:
            if self._on_complete is not None:
                result = self._on_complete()
                if inspect.isawaitable(result):
                    await result
        finally:
            self._done.set()
