"""Shared constants for file names, limits and thresholds."""

from __future__ import annotations

TASKS_FILENAME = "tasks.json"
DEFAULT_DATA_DIRNAME = "data"
MEMORY_DIRNAME = "memory"
BACKUP_PREFIX = "tasks_memory_"
LOCK_SUFFIX = ".lock"

DEFAULT_LOCK_TIMEOUT = 10.0  # seconds

# Verification score (0-100) at or above which a task is completed.
VERIFICATION_PASS_SCORE = 80

TASK_NAME_MAX_LENGTH = 100
DEFAULT_QUERY_PAGE_SIZE = 5

DEFAULT_WORKFLOW_MAX_AGE_MS = 24 * 60 * 60 * 1000

PROJECT_MARKER_TEMPLATE = "<!-- Project: {project} -->"

ENV_CONFIG = "TASKBOARD_CONFIG"
ENV_DATA_DIR = "TASKBOARD_DATA_DIR"
ENV_LEGACY_DATA_DIR = "DATA_DIR"
ENV_PROJECT_ROOT = "TASKBOARD_PROJECT_ROOT"
ENV_LOCK_TIMEOUT = "TASKBOARD_LOCK_TIMEOUT"
ENV_WORKFLOW_SWEEP_INTERVAL = "TASKBOARD_WORKFLOW_SWEEP_INTERVAL"
ENV_WORKFLOW_MAX_AGE_MS = "TASKBOARD_WORKFLOW_MAX_AGE_MS"
ENV_LOG_LEVEL = "TASKBOARD_LOG_LEVEL"
ENV_LOG_FILE = "TASKBOARD_LOG_FILE"
