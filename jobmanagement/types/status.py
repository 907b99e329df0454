"""
Group status view consumed by the status-reporting endpoint.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from jobmanagement.constants import JobStatus, QueueType


class GroupStatus(BaseModel):
    """
    Collective status of a coordinator and its partitions.

    ``status`` is the coordinator's own status; ``counts`` covers the
    partitions only.
    """

    group_id: int
    queue_type: QueueType
    status: JobStatus
    cancel_requested: bool
    total: int
    completed: int
    counts: dict[str, int]
    progress: str
    errors: list[dict[str, Any]]
    result: dict[str, Any] | None = None
    created_at: datetime
    ended_at: datetime | None = None
