"""cronkeeper · Scheduled jobs with tracked lifecycle state.

Verwendung::

    from cronkeeper import JobRegistry, CronScheduler
    from cronkeeper.db.sqlite_backend import SQLiteBackend

    registry = JobRegistry(SQLiteBackend("jobs.db"))
    scheduler = CronScheduler(registry)
    await scheduler.start()
    job = await scheduler.submit("heartbeat", "* * * * * *", beat)
    await scheduler.abort(job.id)
"""

from cronkeeper.cron import CronScheduler, CronTimer, JobRegistry, create_scheduler
from cronkeeper.models import JobRecord, JobState

__version__ = "0.1.0"

__all__ = [
    "CronScheduler",
    "CronTimer",
    "JobRecord",
    "JobRegistry",
    "JobState",
    "create_scheduler",
]
