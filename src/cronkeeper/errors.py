"""cronkeeper · Unified Error Hierarchy.

Provides a structured exception hierarchy for the scheduled-job subsystem.
All custom exceptions inherit from CronkeeperError, which carries an
error_code and optional details dict for programmatic handling.

Usage::

    from cronkeeper.errors import JobNotFoundError

    raise JobNotFoundError("No such job", details={"job_id": job_id})
"""

from __future__ import annotations


class CronkeeperError(Exception):
    """Base exception for all cronkeeper errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "CRONKEEPER_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}


class ConfigError(CronkeeperError):
    """Configuration-related errors (loading, validation, missing keys)."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIG_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


# ============================================================================
# Submission
# ============================================================================


class SubmissionError(CronkeeperError):
    """A job submission was rejected before any side effect happened."""

    def __init__(
        self,
        message: str,
        error_code: str = "SUBMISSION_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class MissingScheduleError(SubmissionError):
    """Submission without a schedule expression."""

    def __init__(
        self,
        message: str = "Crontime is required",
        error_code: str = "MISSING_SCHEDULE",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class MissingJobError(SubmissionError):
    """Submission without a work function."""

    def __init__(
        self,
        message: str = "Job is required",
        error_code: str = "MISSING_JOB",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class InvalidJobTypeError(SubmissionError):
    """Work function (or stop callback) is not callable."""

    def __init__(
        self,
        message: str = "Job must be a function",
        error_code: str = "INVALID_JOB_TYPE",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class InvalidScheduleError(SubmissionError):
    """Schedule expression could not be turned into a trigger."""

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_SCHEDULE",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


# ============================================================================
# Registry / Lifecycle
# ============================================================================


class JobNotFoundError(CronkeeperError):
    """No record exists for the given job id."""

    def __init__(
        self,
        message: str = "No such job",
        error_code: str = "JOB_NOT_FOUND",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class NoActiveHandleError(CronkeeperError):
    """The record exists but this process holds no live timer for it."""

    def __init__(
        self,
        message: str = "No job to stop",
        error_code: str = "NO_ACTIVE_HANDLE",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class DuplicateJobError(CronkeeperError):
    """A record with the same id is already stored."""

    def __init__(
        self,
        message: str = "Job already exists",
        error_code: str = "DUPLICATE_JOB",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class RegistryIOError(CronkeeperError):
    """Underlying storage failure of the job registry."""

    def __init__(
        self,
        message: str,
        error_code: str = "REGISTRY_IO_ERROR",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class InvalidTransitionError(CronkeeperError):
    """State transition out of a terminal state."""

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_TRANSITION",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)


class SchedulerNotRunningError(CronkeeperError):
    """Operation needs a started scheduler."""

    def __init__(
        self,
        message: str = "Scheduler is not running",
        error_code: str = "SCHEDULER_NOT_RUNNING",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, details=details)
