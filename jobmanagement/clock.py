"""
Time source shared by the stores and jobs.

Timestamps are naive UTC so they compare identically in every backend.
"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(UTC).replace(tzinfo=None)
