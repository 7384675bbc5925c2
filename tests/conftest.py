"""
cronkeeper · Shared Test-Fixtures.

Alle Tests nutzen ein temporäres Verzeichnis statt ~/.cronkeeper/.
So sind Tests isoliert und reproduzierbar.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import pytest

from cronkeeper.config import CronkeeperConfig, SchedulerConfig
from cronkeeper.cron.engine import CronScheduler
from cronkeeper.cron.registry import JobRegistry
from cronkeeper.db.sqlite_backend import SQLiteBackend

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Temporäres cronkeeper-Home-Verzeichnis."""
    return tmp_path / ".cronkeeper"


@pytest.fixture
def config(tmp_home: Path) -> CronkeeperConfig:
    """CronkeeperConfig mit temporärem Home-Verzeichnis."""
    return CronkeeperConfig(home=tmp_home)


@pytest.fixture
def backend(tmp_path: Path) -> SQLiteBackend:
    """SQLiteBackend mit temporärer Datenbank."""
    return SQLiteBackend(tmp_path / "cron" / "jobs.db")


@pytest.fixture
def registry(backend: SQLiteBackend) -> JobRegistry:
    """Ungeöffnete JobRegistry auf dem temporären Backend."""
    return JobRegistry(backend)


@pytest.fixture
def scheduler(registry: JobRegistry) -> CronScheduler:
    """Ungestarteter CronScheduler mit Default-Konfiguration."""
    return CronScheduler(registry, SchedulerConfig())


async def _check(predicate: Callable[[], Any]) -> bool:
    result = predicate()
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


async def _wait_until(predicate: Callable[[], Any], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if await _check(predicate):
            return True
        await asyncio.sleep(0.02)
    return await _check(predicate)


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Pollt ein Prädikat bis es True liefert oder das Timeout abläuft."""
    return _wait_until
