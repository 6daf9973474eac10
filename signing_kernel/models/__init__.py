"""ORM models for the signing kernel."""

from signing_kernel.models.audit_event import (
    AUTHZ_CHAIN,
    SYSTEM_CHAIN,
    AuditAction,
    AuditChainHead,
    AuditEvent,
)
from signing_kernel.models.authz import (
    AttributeModel,
    PolicyModel,
    PolicyTargetModel,
    RelationshipModel,
    RoleAssignmentModel,
    RolePermissionModel,
)
from signing_kernel.models.task import TaskModel
from signing_kernel.models.workflow import WorkflowDefinitionModel, WorkflowInstanceModel


def import_all_models() -> None:
    """Ensure every model is registered on Base.metadata.

    Importing this package already does so; the function gives callers an
    explicit hook (create_tables, scripts).
    """


__all__ = [
    "AUTHZ_CHAIN",
    "SYSTEM_CHAIN",
    "AttributeModel",
    "AuditAction",
    "AuditChainHead",
    "AuditEvent",
    "PolicyModel",
    "PolicyTargetModel",
    "RelationshipModel",
    "RoleAssignmentModel",
    "RolePermissionModel",
    "TaskModel",
    "WorkflowDefinitionModel",
    "WorkflowInstanceModel",
    "import_all_models",
]
