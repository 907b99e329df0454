"""
Queue module.
Contains the queue client and coordinator admission control.
"""

from jobmanagement.queue.admission import AdmissionController
from jobmanagement.queue.client import QueueClient, error_payload

__all__ = [
    "QueueClient",
    "AdmissionController",
    "error_payload",
]
