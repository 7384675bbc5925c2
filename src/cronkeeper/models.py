"""
cronkeeper · Central data models.

Pydantic models shared by scheduler and registry.

Design principles:
  - The durable part of a job (id, description, state, timestamps) is
    JSON-serializable.
  - The live timer handle is process-local and never serialized.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_DESCRIPTION = "No description"
_ONE_MICROSECOND = timedelta(microseconds=1)

# ============================================================================
# Hilfsfunktionen
# ============================================================================


def _utc_now() -> datetime:
    """Aktuelle Zeit in UTC. Einheitlich im gesamten System."""
    return datetime.now(UTC)


def _new_id() -> str:
    """Neue UUID als String. Für alle Job-IDs."""
    return uuid.uuid4().hex


# ============================================================================
# Enums
# ============================================================================


class JobState(StrEnum):
    """Lebenszyklus eines Jobs.

    PENDING: Gespeichert, noch kein Tick.
    RUNNING: Wird bei jedem Tick (erneut) betreten.
    STOPPED: Terminal. Timer wurde angehalten oder Schedule erschöpft.
    """

    PENDING = "pending"
    RUNNING = "running"
    STOPPED = "stopped"


# ============================================================================
# Job
# ============================================================================


class JobRecord(BaseModel):
    """Ein registrierter Job.

    ``handle`` zeigt auf den laufenden CronTimer, solange der besitzende
    Prozess ihn hält. Er wird nie persistiert und dient nur zum Stoppen.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=_new_id)
    description: str = DEFAULT_DESCRIPTION
    schedule: str = ""
    state: JobState = JobState.PENDING
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    handle: Any | None = Field(default=None, exclude=True, repr=False)

    @property
    def has_handle(self) -> bool:
        return self.handle is not None

    def touch(self, state: JobState) -> None:
        """Setzt neuen State und schiebt ``updated_at`` strikt nach vorne."""
        now = _utc_now()
        if now <= self.updated_at:
            now = self.updated_at + _ONE_MICROSECOND
        self.state = state
        self.updated_at = now
