"""External task system integration.

Provides the stateless task bridge (item -> task request -> task id) and
an HTTP task creator for a JSON task service.
"""

from commintel.tasks.bridge import (
    MAX_TASK_TITLE_LENGTH,
    TaskBridge,
    TaskCreator,
    TaskRequest,
    build_task_request,
)
from commintel.tasks.http_creator import HttpTaskCreator

__all__ = [
    "MAX_TASK_TITLE_LENGTH",
    "HttpTaskCreator",
    "TaskBridge",
    "TaskCreator",
    "TaskRequest",
    "build_task_request",
]
