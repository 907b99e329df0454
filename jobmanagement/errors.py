"""
Error taxonomy for the job management engine.

Version mismatches are not errors: the store reports them as ``False`` and
callers treat "already finished by someone else" as a normal branch.
"""

from enum import StrEnum
from typing import Any


class StoreErrorKind(StrEnum):
    """Backend-neutral classification of a store exception."""

    TRANSIENT = "transient"
    VERSION_CONFLICT = "version_conflict"
    NOT_FOUND = "not_found"
    FATAL = "fatal"


class JobManagementError(Exception):
    """Base class for all job management errors."""


class TransientStoreError(JobManagementError):
    """The store is temporarily unavailable; retry with backoff."""


class JobNotFoundError(JobManagementError):
    """The referenced job does not exist."""


class JobConflictError(JobManagementError):
    """An active job group already exists where only one is allowed."""


class LeaseLostError(JobManagementError):
    """
    The caller's lease was reclaimed by another worker.

    Raised inside a running job so it stops promptly; the host treats it as a
    normal outcome and performs no further writes for the job.
    """


class JobCancelledError(JobManagementError):
    """Cancellation was requested for the running job."""


class PlanningFailure(JobManagementError):
    """The planner failed before any child job existed."""


class PartitionFailure(JobManagementError):
    """
    A partition failed permanently and must not be retried.

    Args:
        message: Human readable reason.
        details: Extra structured data stored with the error payload.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        """Serialize the failure for the job result."""
        return {"error": self.message, **self.details}


class AggregateFailure(JobManagementError):
    """A coordinator observed at least one failed child."""

    def __init__(self, errors: list[dict[str, Any]]):
        super().__init__(f"{len(errors)} partition(s) failed")
        self.errors = errors

    def to_payload(self) -> dict[str, Any]:
        """Serialize the failure for the coordinator result."""
        return {"error": str(self), "errors": self.errors}
