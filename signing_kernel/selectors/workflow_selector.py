"""
Module: signing_kernel.selectors.workflow_selector
Responsibility: Read queries over workflow definitions and instances:
    definition lookup by (workflow_id, version), instance snapshots with
    their tasks, and the instances the timer service has to look at.
Architecture position: Kernel > Selectors.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from signing_kernel.domain.dtos import InstanceRecord, InstanceView
from signing_kernel.domain.workflow import InstanceStatus, WorkflowDefinition
from signing_kernel.exceptions import InstanceNotFoundError, WorkflowDefinitionNotFoundError
from signing_kernel.models.workflow import WorkflowDefinitionModel, WorkflowInstanceModel
from signing_kernel.selectors.base import BaseSelector
from signing_kernel.selectors.task_selector import TaskSelector


class WorkflowSelector(BaseSelector[WorkflowInstanceModel]):
    """
    Selector for definitions and instances.

    Guarantees:
        - Read-only: No mutations are performed.
        - Definitions are returned as domain objects, instances as DTOs.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    # -- definitions -------------------------------------------------------

    def latest_version(self, workflow_id: str) -> int:
        """Highest registered version, 0 when none is registered."""
        return self.session.execute(
            select(func.coalesce(func.max(WorkflowDefinitionModel.version), 0)).where(
                WorkflowDefinitionModel.workflow_id == workflow_id
            )
        ).scalar_one()

    def definition_row(self, workflow_id: str, version: int | None = None) -> WorkflowDefinitionModel:
        if version is None:
            version = self.latest_version(workflow_id)
        row = self.session.execute(
            select(WorkflowDefinitionModel).where(
                WorkflowDefinitionModel.workflow_id == workflow_id,
                WorkflowDefinitionModel.version == version,
            )
        ).scalar_one_or_none()
        if row is None:
            raise WorkflowDefinitionNotFoundError(workflow_id, version or None)
        return row

    def get_definition(self, workflow_id: str, version: int | None = None) -> WorkflowDefinition:
        return self.definition_row(workflow_id, version).to_domain()

    # -- instances ---------------------------------------------------------

    def get_instance(self, instance_id: UUID | str) -> InstanceRecord:
        row = self.session.execute(
            select(WorkflowInstanceModel).where(WorkflowInstanceModel.id == instance_id)
        ).scalar_one_or_none()
        if row is None:
            raise InstanceNotFoundError(str(instance_id))
        return row.to_dto()

    def get_view(self, instance_id: UUID | str) -> InstanceView:
        instance = self.get_instance(instance_id)
        tasks = TaskSelector(self.session).for_instance(instance.instance_id)
        return InstanceView(instance=instance, tasks=tuple(tasks))

    def get_many(self, instance_ids: Iterable[UUID]) -> dict[UUID, InstanceRecord]:
        ids = list(set(instance_ids))
        if not ids:
            return {}
        rows = self.session.execute(
            select(WorkflowInstanceModel).where(WorkflowInstanceModel.id.in_(ids))
        ).scalars().all()
        return {row.id: row.to_dto() for row in rows}

    def running_past_deadline(self, now: datetime) -> list[InstanceRecord]:
        rows = self.session.execute(
            select(WorkflowInstanceModel).where(
                WorkflowInstanceModel.status == InstanceStatus.RUNNING.value,
                WorkflowInstanceModel.deadline.is_not(None),
                WorkflowInstanceModel.deadline <= now,
            )
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def list_instances(
        self,
        organization_id: str | None = None,
        status: InstanceStatus | None = None,
    ) -> list[InstanceRecord]:
        stmt = select(WorkflowInstanceModel).options(selectinload(WorkflowInstanceModel.tasks))
        if organization_id is not None:
            stmt = stmt.where(WorkflowInstanceModel.organization_id == organization_id)
        if status is not None:
            stmt = stmt.where(WorkflowInstanceModel.status == status.value)
        rows = self.session.execute(stmt.order_by(WorkflowInstanceModel.started_at)).scalars().all()
        return [row.to_dto() for row in rows]
