"""
Worker module.
Contains the job host process.
"""

from jobmanagement.worker.main import JobHost, load_registry, run, run_async

__all__ = ["JobHost", "load_registry", "run", "run_async"]
