"""Per-project task store and the engine that plans, gates and verifies tasks.

Tasks live in one JSON file per project; every operation runs under the lock
for that file.
"""

from .engine import BatchResult, TaskEngine, VerificationResult
from .model import RelatedFile, RelatedFileType, Task, TaskInput, TaskStatus, UpdateMode
from .store import TaskStore

__all__ = [
    "BatchResult",
    "RelatedFile",
    "RelatedFileType",
    "Task",
    "TaskEngine",
    "TaskInput",
    "TaskStatus",
    "TaskStore",
    "UpdateMode",
    "VerificationResult",
]
