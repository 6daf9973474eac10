"""Selectors for the signing kernel (read side)."""

from signing_kernel.selectors.task_selector import TaskSelector
from signing_kernel.selectors.workflow_selector import WorkflowSelector

__all__ = [
    "TaskSelector",
    "WorkflowSelector",
]
