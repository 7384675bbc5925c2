"""cronkeeper cron module -- Zeitgesteuerte Jobs mit Zustandsverfolgung."""

from cronkeeper.cron.engine import CronScheduler, create_scheduler
from cronkeeper.cron.registry import JobRegistry
from cronkeeper.cron.timer import CronTimer, parse_schedule

__all__ = ["CronScheduler", "CronTimer", "JobRegistry", "create_scheduler", "parse_schedule"]
