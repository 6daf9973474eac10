"""
Module: signing_kernel.selectors.task_selector
Responsibility: Read queries over tasks: a user's inbox (list_user_tasks),
    the tasks of an instance, and the timer wheel inputs (tasks with a due
    date or a pending reminder/escalation).
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Results are TaskRecord DTOs ordered by (due_at, order) for inboxes and
      by (order, iteration) within an instance, so listings are stable.
    - The inbox query is served by idx_task_assignee_status_due.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from signing_kernel.domain.dtos import TaskFilters, TaskRecord
from signing_kernel.domain.task import ACTIONABLE_TASK_STATUSES, TaskStatus
from signing_kernel.domain.workflow import InstanceStatus
from signing_kernel.exceptions import TaskNotFoundError
from signing_kernel.models.task import TaskModel
from signing_kernel.models.workflow import WorkflowInstanceModel
from signing_kernel.selectors.base import BaseSelector

# Statuses shown when the caller gives no status filter.
DEFAULT_INBOX_STATUSES: tuple[TaskStatus, ...] = (
    TaskStatus.PENDING,
    TaskStatus.IN_PROGRESS,
)


def _instance_order(task: TaskModel) -> tuple:
    return (task.order, task.iteration, task.status != TaskStatus.DELEGATED.value, task.created_at)


class TaskSelector(BaseSelector[TaskModel]):
    """
    Selector for task queries.

    Guarantees:
        - Read-only: No mutations are performed.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    def get(self, task_id: UUID | str) -> TaskRecord:
        task = self.session.execute(
            select(TaskModel).where(TaskModel.id == task_id)
        ).scalar_one_or_none()
        if task is None:
            raise TaskNotFoundError(str(task_id))
        return task.to_dto()

    def for_instance(self, instance_id: UUID) -> list[TaskRecord]:
        rows = self.session.execute(
            select(TaskModel).where(TaskModel.instance_id == instance_id)
        ).scalars().all()
        return [t.to_dto() for t in sorted(rows, key=_instance_order)]

    def list_user_tasks(self, user_id: str, filters: TaskFilters | None = None) -> list[TaskRecord]:
        """
        Tasks assigned to ``user_id``.

        Without a status filter only actionable tasks (pending, in_progress)
        are returned.
        """
        filters = filters or TaskFilters()
        statuses = filters.statuses or DEFAULT_INBOX_STATUSES
        stmt = select(TaskModel).where(
            TaskModel.assignee_id == user_id,
            TaskModel.status.in_([s.value for s in statuses]),
        )
        if filters.instance_id is not None:
            stmt = stmt.where(TaskModel.instance_id == filters.instance_id)
        if filters.kind is not None:
            stmt = stmt.where(TaskModel.kind == filters.kind.value)
        if filters.due_before is not None:
            stmt = stmt.where(TaskModel.due_at.is_not(None), TaskModel.due_at < filters.due_before)
        rows = self.session.execute(stmt).scalars().all()
        far_future = datetime.max.isoformat()
        rows = sorted(
            rows,
            key=lambda t: (
                t.due_at.isoformat() if t.due_at else far_future,
                t.order,
                str(t.id),
            ),
        )
        return [t.to_dto() for t in rows]

    def timer_candidates(self) -> list[TaskRecord]:
        """
        Tasks the timer service may act on: actionable tasks
        with a due date or an assignment time (reminders), and expired tasks
        not yet escalated.  Only tasks of running or failed instances are
        considered for escalation; reminders and expiry need a running one.
        """
        actionable = [s.value for s in ACTIONABLE_TASK_STATUSES]
        rows = self.session.execute(
            select(TaskModel)
            .join(WorkflowInstanceModel, WorkflowInstanceModel.id == TaskModel.instance_id)
            .where(
                or_(
                    (TaskModel.status.in_(actionable))
                    & (WorkflowInstanceModel.status == InstanceStatus.RUNNING.value),
                    (TaskModel.status == TaskStatus.EXPIRED.value)
                    & TaskModel.escalated_at.is_(None),
                )
            )
        ).scalars().all()
        return [t.to_dto() for t in sorted(rows, key=_instance_order)]
