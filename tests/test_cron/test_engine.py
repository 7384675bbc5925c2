"""Tests für den CronScheduler.

Testet Validierung, Zustandsübergänge, Abort, Fehlerpolitik der Registry,
Overlap-Policy und das End-to-End-Heartbeat-Szenario.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from cronkeeper.config import CronkeeperConfig, RegistryConfig, SchedulerConfig
from cronkeeper.cron.engine import CronScheduler, create_scheduler
from cronkeeper.cron.registry import JobRegistry
from cronkeeper.errors import (
    InvalidJobTypeError,
    InvalidScheduleError,
    InvalidTransitionError,
    JobNotFoundError,
    MissingJobError,
    MissingScheduleError,
    NoActiveHandleError,
    RegistryIOError,
    SchedulerNotRunningError,
)
from cronkeeper.models import DEFAULT_DESCRIPTION, JobState

if TYPE_CHECKING:
    from collections.abc import Callable


@contextlib.asynccontextmanager
async def started(scheduler: CronScheduler) -> AsyncIterator[CronScheduler]:
    await scheduler.start()
    try:
        yield scheduler
    finally:
        await scheduler.shutdown()
        await scheduler.registry.close()


def _rejected(logs: list[dict[str, Any]], reason: str) -> bool:
    return any(
        e["event"] == "cron_job_rejected" and e["reason"] == reason and e["log_level"] == "error"
        for e in logs
    )


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, scheduler: CronScheduler) -> None:
        await scheduler.start()
        assert scheduler.running is True
        assert scheduler.registry.is_open is True

        await scheduler.shutdown()
        assert scheduler.running is False
        await scheduler.registry.close()

    @pytest.mark.asyncio
    async def test_double_start_warns(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            with capture_logs() as logs:
                await scheduler.start()
            assert scheduler.running is True
            assert any(e["event"] == "cron_scheduler_already_running" for e in logs)

    @pytest.mark.asyncio
    async def test_shutdown_without_start(self, scheduler: CronScheduler) -> None:
        await scheduler.shutdown()
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_submit_before_start_raises(self, scheduler: CronScheduler) -> None:
        with pytest.raises(SchedulerNotRunningError):
            await scheduler.submit("x", "* * * * *", lambda: None)

    @pytest.mark.asyncio
    async def test_shutdown_drops_handles_keeps_records(self, scheduler: CronScheduler) -> None:
        await scheduler.start()
        job = await scheduler.submit("x", "0 8 * * *", lambda: None)

        await scheduler.shutdown()

        assert scheduler.registry.active_handles == {}
        loaded = await scheduler.registry.get(job.id)
        assert loaded is not None
        assert loaded.state == JobState.PENDING
        with pytest.raises(NoActiveHandleError):
            await scheduler.abort(job.id)
        await scheduler.registry.close()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_tick(self, scheduler: CronScheduler) -> None:
        in_work = asyncio.Event()
        cancelled: list[str] = []

        async def long_work() -> None:
            in_work.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append("work")
                raise

        await scheduler.start()
        job = await scheduler.submit("long", "* * * * * *", long_work)
        await asyncio.wait_for(in_work.wait(), timeout=3.0)

        await scheduler.shutdown()

        assert cancelled == ["work"]
        assert job.handle.completed is True
        loaded = await scheduler.registry.get(job.id)
        assert loaded is not None
        assert loaded.state == JobState.RUNNING
        await scheduler.registry.close()

    @pytest.mark.asyncio
    async def test_create_scheduler_from_config(self, tmp_path: Any) -> None:
        config = CronkeeperConfig(home=tmp_path, registry=RegistryConfig(backend="memory"))
        scheduler = create_scheduler(config)

        async with started(scheduler):
            job = await scheduler.submit("x", "@every 1h", lambda: None)
            assert await scheduler.get_job(job.id) is not None


# ============================================================================
# submit: Validierung
# ============================================================================


class TestSubmitValidation:
    """Validierungsfehler passieren synchron, ohne Registry-Zugriff."""

    @staticmethod
    def _mock_registry() -> MagicMock:
        registry = MagicMock(spec=JobRegistry)
        registry.store = AsyncMock()
        return registry

    @pytest.mark.asyncio
    @pytest.mark.parametrize("schedule", [None, "", "   "])
    async def test_missing_schedule(self, schedule: Any) -> None:
        registry = self._mock_registry()
        scheduler = CronScheduler(registry)

        with capture_logs() as logs, pytest.raises(MissingScheduleError):
            await scheduler.submit("x", schedule, lambda: None)

        registry.store.assert_not_awaited()
        assert _rejected(logs, "missing_schedule")

    @pytest.mark.asyncio
    async def test_missing_job(self) -> None:
        registry = self._mock_registry()
        scheduler = CronScheduler(registry)

        with capture_logs() as logs, pytest.raises(MissingJobError):
            await scheduler.submit("x", "* * * * *", None)

        registry.store.assert_not_awaited()
        assert _rejected(logs, "missing_job")

    @pytest.mark.asyncio
    async def test_job_not_callable(self) -> None:
        registry = self._mock_registry()
        scheduler = CronScheduler(registry)

        with capture_logs() as logs, pytest.raises(InvalidJobTypeError):
            await scheduler.submit("x", "* * * * *", "not a function")  # type: ignore[arg-type]

        registry.store.assert_not_awaited()
        assert _rejected(logs, "job_not_callable")

    @pytest.mark.asyncio
    async def test_schedule_checked_before_job(self) -> None:
        scheduler = CronScheduler(self._mock_registry())
        with pytest.raises(MissingScheduleError):
            await scheduler.submit("x", None, None)

    @pytest.mark.asyncio
    async def test_on_stopped_not_callable(self) -> None:
        registry = self._mock_registry()
        scheduler = CronScheduler(registry)

        with pytest.raises(InvalidJobTypeError, match="on_stopped"):
            await scheduler.submit("x", "* * * * *", lambda: None, on_stopped=42)  # type: ignore[arg-type]
        registry.store.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_schedule_expression(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            with capture_logs() as logs, pytest.raises(InvalidScheduleError):
                await scheduler.submit("x", "every tuesday", lambda: None)

            assert await scheduler.list_jobs() == []
            assert _rejected(logs, "invalid_schedule")


# ============================================================================
# submit: Erfolg
# ============================================================================


class TestSubmit:
    @pytest.mark.asyncio
    async def test_returns_pending_record(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            job = await scheduler.submit("heartbeat", "0 8 * * *", lambda: None)

            assert job.id
            assert job.description == "heartbeat"
            assert job.state == JobState.PENDING
            assert job.created_at == job.updated_at
            assert job.schedule == "0 8 * * *"
            assert job.handle is not None
            assert job.handle.running is True

    @pytest.mark.asyncio
    async def test_record_is_stored(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            job = await scheduler.submit("heartbeat", "0 8 * * *", lambda: None)

            loaded = await scheduler.get_job(job.id)
            assert loaded is not None
            assert loaded.state == JobState.PENDING
            assert loaded.handle is job.handle

    @pytest.mark.asyncio
    async def test_default_description(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            job = await scheduler.submit(None, "0 8 * * *", lambda: None)
            assert job.description == DEFAULT_DESCRIPTION

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            jobs = [await scheduler.submit("x", "0 8 * * *", lambda: None) for _ in range(20)]
            assert len({j.id for j in jobs}) == 20

    @pytest.mark.asyncio
    async def test_store_failure_still_starts_timer(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            scheduler.registry.store = AsyncMock(side_effect=RegistryIOError("disk full"))  # type: ignore[method-assign]

            with capture_logs() as logs:
                job = await scheduler.submit("x", "0 8 * * *", lambda: None)

            assert job.state == JobState.PENDING
            assert job.handle is not None
            assert job.handle.running is True
            assert any(e["event"] == "cron_job_store_failed" for e in logs)
            job.handle.stop()
            await job.handle.wait_stopped(timeout=2.0)

    @pytest.mark.asyncio
    async def test_list_jobs_and_next_run_times(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            a = await scheduler.submit("a", "0 8 * * *", lambda: None)
            b = await scheduler.submit("b", "0 9 * * *", lambda: None)

            jobs = await scheduler.list_jobs()
            assert {j.id for j in jobs} == {a.id, b.id}
            assert await scheduler.list_jobs(JobState.STOPPED) == []

            times = scheduler.get_next_run_times()
            assert set(times) == {a.id, b.id}
            assert all(t is not None for t in times.values())


# ============================================================================
# Ticks
# ============================================================================


class TestTick:
    @pytest.mark.asyncio
    async def test_tick_sets_running_before_work(self, scheduler: CronScheduler) -> None:
        seen: list[JobState] = []
        ref: dict[str, str] = {}

        async def work() -> None:
            current = await scheduler.registry.get(ref["id"])
            assert current is not None
            seen.append(current.state)

        async with started(scheduler):
            job = await scheduler.submit("x", "0 8 * * *", work)
            ref["id"] = job.id

            await scheduler.trigger_now(job.id)

            assert seen == [JobState.RUNNING]
            loaded = await scheduler.get_job(job.id)
            assert loaded is not None
            assert loaded.state == JobState.RUNNING
            assert loaded.updated_at > loaded.created_at

    @pytest.mark.asyncio
    async def test_each_tick_advances_updated_at(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            job = await scheduler.submit("x", "0 8 * * *", lambda: None)

            await scheduler.trigger_now(job.id)
            first = await scheduler.get_job(job.id)
            await scheduler.trigger_now(job.id)
            second = await scheduler.get_job(job.id)

            assert first is not None and second is not None
            assert second.state == JobState.RUNNING
            assert second.updated_at > first.updated_at

    @pytest.mark.asyncio
    async def test_registry_failure_does_not_block_work(self, scheduler: CronScheduler) -> None:
        work = MagicMock()
        async with started(scheduler):
            job = await scheduler.submit("x", "0 8 * * *", work)
            scheduler.registry.update = AsyncMock(side_effect=RegistryIOError("locked"))  # type: ignore[method-assign]

            with capture_logs() as logs:
                await scheduler.trigger_now(job.id)

            work.assert_called_once_with()
            assert any(
                e["event"] == "cron_job_state_update_failed" and e["log_level"] == "warning"
                for e in logs
            )

    @pytest.mark.asyncio
    async def test_work_exception_is_logged(self, scheduler: CronScheduler) -> None:
        def boom() -> None:
            raise RuntimeError("boom")

        async with started(scheduler):
            job = await scheduler.submit("x", "0 8 * * *", boom)

            with capture_logs() as logs:
                await scheduler.trigger_now(job.id)

            assert any(e["event"] == "cron_job_failed" for e in logs)
            assert job.handle.running is True

    @pytest.mark.asyncio
    async def test_trigger_now_unknown(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            with pytest.raises(JobNotFoundError):
                await scheduler.trigger_now("ghost")


# ============================================================================
# abort / Stop-Pfad
# ============================================================================


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_unknown_raises(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            with pytest.raises(JobNotFoundError):
                await scheduler.abort("ghost")

    @pytest.mark.asyncio
    async def test_abort_without_handle_raises(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            await scheduler.registry.store("foreign", "loaded elsewhere", None)

            with pytest.raises(NoActiveHandleError):
                await scheduler.abort("foreign")

    @pytest.mark.asyncio
    async def test_abort_transitions_to_stopped(self, scheduler: CronScheduler) -> None:
        on_stopped = MagicMock()
        async with started(scheduler):
            job = await scheduler.submit("x", "0 8 * * *", lambda: None, on_stopped)

            await scheduler.abort(job.id)
            assert await job.handle.wait_stopped(timeout=2.0)

            loaded = await scheduler.get_job(job.id)
            assert loaded is not None
            assert loaded.state == JobState.STOPPED
            assert loaded.handle is None
            on_stopped.assert_called_once_with()
            assert job.id not in scheduler.registry._locks

    @pytest.mark.asyncio
    async def test_on_stopped_runs_after_stopped_write(self, scheduler: CronScheduler) -> None:
        seen: list[JobState] = []
        ref: dict[str, str] = {}

        async def on_stopped() -> None:
            current = await scheduler.registry.get(ref["id"])
            assert current is not None
            seen.append(current.state)

        async with started(scheduler):
            job = await scheduler.submit("x", "0 8 * * *", lambda: None, on_stopped)
            ref["id"] = job.id

            await scheduler.abort(job.id)
            await job.handle.wait_stopped(timeout=2.0)

            assert seen == [JobState.STOPPED]

    @pytest.mark.asyncio
    async def test_on_stopped_runs_despite_write_failure(self, scheduler: CronScheduler) -> None:
        on_stopped = MagicMock()
        async with started(scheduler):
            job = await scheduler.submit("x", "0 8 * * *", lambda: None, on_stopped)
            scheduler.registry.update = AsyncMock(side_effect=RegistryIOError("locked"))  # type: ignore[method-assign]

            await scheduler.abort(job.id)
            await job.handle.wait_stopped(timeout=2.0)

            on_stopped.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_second_abort_has_no_handle(self, scheduler: CronScheduler) -> None:
        on_stopped = MagicMock()
        async with started(scheduler):
            job = await scheduler.submit("x", "0 8 * * *", lambda: None, on_stopped)

            await scheduler.abort(job.id)
            await job.handle.wait_stopped(timeout=2.0)

            with pytest.raises(NoActiveHandleError):
                await scheduler.abort(job.id)
            on_stopped.assert_called_once()

    @pytest.mark.asyncio
    async def test_stopped_is_terminal(self, scheduler: CronScheduler) -> None:
        async with started(scheduler):
            job = await scheduler.submit("x", "0 8 * * *", lambda: None)
            await scheduler.abort(job.id)
            await job.handle.wait_stopped(timeout=2.0)

            with pytest.raises(InvalidTransitionError):
                await scheduler._set_state(job.id, JobState.RUNNING)

    @pytest.mark.asyncio
    async def test_on_stopped_exception_is_logged(self, scheduler: CronScheduler) -> None:
        def broken() -> None:
            raise RuntimeError("cleanup failed")

        async with started(scheduler):
            job = await scheduler.submit("x", "0 8 * * *", lambda: None, broken)

            with capture_logs() as logs:
                await scheduler.abort(job.id)
                await job.handle.wait_stopped(timeout=2.0)

            assert any(e["event"] == "cron_job_on_stopped_failed" for e in logs)

    @pytest.mark.asyncio
    async def test_exhausted_schedule_stops_job(self, scheduler: CronScheduler) -> None:
        work = MagicMock()
        on_stopped = MagicMock()
        run_at = datetime.now(UTC) + timedelta(milliseconds=300)

        async with started(scheduler):
            job = await scheduler.submit("one-shot", run_at, work, on_stopped)
            assert await job.handle.wait_stopped(timeout=3.0)

            loaded = await scheduler.get_job(job.id)
            assert loaded is not None
            assert loaded.state == JobState.STOPPED
            work.assert_called_once()
            on_stopped.assert_called_once()


# ============================================================================
# Overlap-Policy
# ============================================================================


class TestOverlapPolicy:
    """Asynchrone Job-Funktionen: abwarten (Default) oder überlappen lassen."""

    @staticmethod
    def _slow_work(stats: dict[str, int]) -> Callable[[], Any]:
        async def work() -> None:
            stats["active"] += 1
            stats["peak"] = max(stats["peak"], stats["active"])
            try:
                await asyncio.sleep(1.6)
            finally:
                stats["active"] -= 1

        return work

    @pytest.mark.asyncio
    async def test_no_overlap_by_default(
        self, registry: JobRegistry, wait_until: Callable[..., Any]
    ) -> None:
        stats = {"active": 0, "peak": 0}
        scheduler = CronScheduler(registry, SchedulerConfig(allow_overlap=False))

        async with started(scheduler):
            job = await scheduler.submit("slow", "* * * * * *", self._slow_work(stats))
            await asyncio.sleep(3.2)
            await scheduler.abort(job.id)
            await wait_until(lambda: stats["active"] == 0, timeout=2.0)

        assert stats["peak"] == 1

    @pytest.mark.asyncio
    async def test_manual_ticks_do_not_overlap(self, registry: JobRegistry) -> None:
        stats = {"active": 0, "peak": 0, "runs": 0}
        scheduler = CronScheduler(registry, SchedulerConfig(allow_overlap=False))

        async def work() -> None:
            stats["runs"] += 1
            stats["active"] += 1
            stats["peak"] = max(stats["peak"], stats["active"])
            try:
                await asyncio.sleep(0.3)
            finally:
                stats["active"] -= 1

        async with started(scheduler):
            job = await scheduler.submit("slow", "0 0 1 1 *", work)
            await asyncio.gather(scheduler.trigger_now(job.id), scheduler.trigger_now(job.id))

        assert stats["runs"] == 2
        assert stats["peak"] == 1

    @pytest.mark.asyncio
    async def test_overlap_when_allowed(
        self, registry: JobRegistry, wait_until: Callable[..., Any]
    ) -> None:
        stats = {"active": 0, "peak": 0}
        scheduler = CronScheduler(registry, SchedulerConfig(allow_overlap=True))

        async with started(scheduler):
            job = await scheduler.submit("slow", "* * * * * *", self._slow_work(stats))
            await asyncio.sleep(3.2)
            await scheduler.abort(job.id)
            await wait_until(lambda: stats["active"] == 0, timeout=2.0)

        assert stats["peak"] >= 2


# ============================================================================
# End-to-End
# ============================================================================


class TestHeartbeatScenario:
    @pytest.mark.asyncio
    async def test_heartbeat(self, scheduler: CronScheduler) -> None:
        counter = {"n": 0}

        def beat() -> None:
            counter["n"] += 1

        async with started(scheduler):
            job = await scheduler.submit("heartbeat", "* * * * * *", beat)

            await asyncio.sleep(3.5)
            assert counter["n"] >= 3
            loaded = await scheduler.get_job(job.id)
            assert loaded is not None
            assert loaded.state == JobState.RUNNING

            await scheduler.abort(job.id)
            assert await job.handle.wait_stopped(timeout=2.0)

            loaded = await scheduler.get_job(job.id)
            assert loaded is not None
            assert loaded.state == JobState.STOPPED

            frozen = counter["n"]
            await asyncio.sleep(1.2)
            assert counter["n"] == frozen
