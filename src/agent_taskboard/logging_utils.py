"""Configure loguru sinks and render compact summaries for log lines."""

from __future__ import annotations

import json
import sys
from typing import Any, Optional

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>{extra[project]}</magenta> | "
    "{message}"
)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Replace the default loguru sink with the taskboard format.

    Lines logged outside a project binding show ``-`` in the project column.
    """
    logger.remove()
    logger.configure(extra={"project": "-"})
    logger.add(sys.stderr, level=level.upper(), format=_FORMAT)
    if log_file:
        logger.add(
            log_file,
            level=level.upper(),
            format=_FORMAT,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )


def summarize_tasks(tasks: list[Any], limit: int = 5) -> str:
    """Render ``name (status)`` for the first *limit* tasks."""
    parts = [f"{t.name} ({t.status.value})" for t in tasks[:limit]]
    if len(tasks) > limit:
        parts.append(f"... +{len(tasks) - limit} more")
    return ", ".join(parts) if parts else "<none>"


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs, falling back to ``str``."""
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
