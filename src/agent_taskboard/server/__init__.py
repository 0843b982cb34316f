"""HTTP boundary for the task store and workflow engine."""

from .api import create_app

__all__ = ["create_app"]
