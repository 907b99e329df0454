"""
API module.
Contains the FastAPI application for operation status and control.
"""

from jobmanagement.api.main import create_app

__all__ = ["create_app"]
