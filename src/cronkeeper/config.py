"""
cronkeeper · Configuration system.

Loads configuration from:
  1. Defaults (defined here)
  2. A YAML file, e.g. ~/.cronkeeper/config.yaml (overrides defaults)
  3. Environment variables CRONKEEPER_* (overrides everything)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from cronkeeper.errors import ConfigError
from cronkeeper.models import DEFAULT_DESCRIPTION

log = logging.getLogger(__name__)

ENV_PREFIX = "CRONKEEPER_"

# ============================================================================
# Konfigurationsmodelle
# ============================================================================


class SchedulerConfig(BaseModel):
    """Scheduler-Konfiguration."""

    timezone: str = "UTC"
    # True = asynchrone Job-Funktionen werden nicht abgewartet, Ausführungen
    # desselben Jobs dürfen sich überlappen.
    allow_overlap: bool = False
    misfire_grace_seconds: int = Field(default=1, ge=1, le=3600)
    coalesce: bool = True
    default_description: str = DEFAULT_DESCRIPTION


class RegistryConfig(BaseModel):
    """Job-Registry-Konfiguration."""

    backend: Literal["sqlite", "memory"] = Field(
        default="sqlite", description="'sqlite' oder 'memory' (SQLite in-memory)"
    )
    db_path: Path | None = None  # None = <home>/cron/jobs.db


class LoggingConfig(BaseModel):
    """Logging-Konfiguration."""

    level: str = "INFO"
    json_logs: bool = False
    console: bool = True
    log_dir: Path | None = None


# ============================================================================
# Haupt-Konfiguration
# ============================================================================


class CronkeeperConfig(BaseModel):
    """Vollständige cronkeeper-Konfiguration.

    Wird einmal beim Start des Host-Prozesses geladen.
    """

    home: Path = Field(default_factory=lambda: Path.home() / ".cronkeeper")
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def db_path(self) -> Path:
        """Pfad der Registry-Datenbank."""
        if self.registry.db_path is not None:
            return self.registry.db_path.expanduser()
        return self.home.expanduser() / "cron" / "jobs.db"


# ============================================================================
# Config-Laden
# ============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Tiefes Mergen von zwei Dicts. Override gewinnt bei Konflikten."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Wendet CRONKEEPER_* Umgebungsvariablen an.

    Konvention: CRONKEEPER_SECTION_KEY → data["section"]["key"]
    Beispiel: CRONKEEPER_SCHEDULER_ALLOW_OVERLAP → data["scheduler"]["allow_overlap"]
    """
    sections = set(CronkeeperConfig.model_fields)
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        parts = key[len(ENV_PREFIX):].lower().split("_")
        if len(parts) >= 2 and parts[0] in sections and parts[0] != "home":
            section = data.setdefault(parts[0], {})
            if isinstance(section, dict):
                section["_".join(parts[1:])] = value
        else:
            data["_".join(parts)] = value
    return data


def load_config(
    config_path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> CronkeeperConfig:
    """Lädt die Konfiguration.

    Reihenfolge (spätere überschreiben frühere):
      1. Defaults (in den Pydantic-Modellen)
      2. config.yaml (wenn vorhanden)
      3. ``overrides`` (z.B. vom Host-Prozess)
      4. CRONKEEPER_* Umgebungsvariablen

    Args:
        config_path: Expliziter Pfad zur config.yaml. Wenn None: ~/.cronkeeper/config.yaml

    Returns:
        Vollständig validierte CronkeeperConfig.

    Raises:
        ConfigError: Wenn die Werte die Validierung nicht bestehen.
    """
    data: dict[str, Any] = {}

    if config_path is None:
        config_path = Path.home() / ".cronkeeper" / "config.yaml"

    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            if isinstance(file_data, dict):
                data = file_data
        except yaml.YAMLError as exc:
            log.warning("Fehlerhafte config.yaml wird ignoriert: %s", exc)

    if overrides:
        data = _deep_merge(data, overrides)

    data = _apply_env_overrides(data)

    try:
        return CronkeeperConfig(**data)
    except ValidationError as exc:
        raise ConfigError(
            f"Ungültige Konfiguration: {exc.error_count()} Fehler",
            details={"errors": exc.errors(include_url=False)},
        ) from exc
