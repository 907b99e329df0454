"""
Bulk Job Management

Durable job queue and coordinator/worker orchestration engine for long-running
bulk operations (export, reindex, import), built on atomic conditional writes
against an ordinary database.
"""

__version__ = "1.0.0"
