"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Signed documents are legal evidence.  The records proving who signed what,
when and with which evidence must be tamper-proof:

  - Audit events are append-only; the hash chain detects tampering, these
    listeners prevent it through the ORM in the first place.
  - A registered workflow definition is immutable; instances pin a version
    and its hash, and a new definition is a new version.
  - A completed task is final: its status never changes again and its
    evidence is write-once.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check the rules:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                   | When Immutable                 | Rule
-------------------------|--------------------------------|---------------------------
AuditEvent               | ALWAYS (from creation)         | No UPDATE, no DELETE
WorkflowDefinitionModel  | ALWAYS (from creation)         | No UPDATE, no DELETE
TaskModel                | After status = completed       | Status frozen
TaskModel                | After evidence is set          | Evidence write-once

Task rows of a deleted instance are removed by ON DELETE CASCADE, which
these listeners do not see; that is the one sanctioned way tasks disappear.
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from signing_kernel.exceptions import ImmutabilityViolationError
from signing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, entity_id, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_audit_event_immutability(mapper, connection, target):
    """Prevent any updates to AuditEvent records."""
    _blocked("AuditEvent", target.id, "UPDATE", "Audit events are immutable and cannot be modified")


def _check_audit_event_delete(mapper, connection, target):
    """Prevent deletion of AuditEvent records."""
    _blocked("AuditEvent", target.id, "DELETE", "Audit events are immutable and cannot be deleted")


def _check_definition_immutability(mapper, connection, target):
    """Registered definitions never change; register a new version instead."""
    _blocked(
        "WorkflowDefinition",
        target.id,
        "UPDATE",
        f"Definition {target.workflow_id} v{target.version} is immutable",
    )


def _check_definition_delete(mapper, connection, target):
    _blocked(
        "WorkflowDefinition",
        target.id,
        "DELETE",
        f"Definition {target.workflow_id} v{target.version} cannot be deleted",
    )


def _check_task_immutability(mapper, connection, target):
    """
    A completed task keeps its status; evidence is write-once.

    Uses attribute history so the transition INTO completed (which sets
    evidence in the same flush) is allowed.
    """
    status_history = get_history(target, "status")
    if status_history.deleted and "completed" in status_history.deleted:
        _blocked(
            "Task",
            target.id,
            "UPDATE",
            f"Completed task cannot move to {target.status}",
        )

    evidence_history = get_history(target, "evidence")
    if evidence_history.has_changes() and any(
        old is not None for old in evidence_history.deleted
    ):
        _blocked("Task", target.id, "UPDATE", "Task evidence is write-once")

    digest_history = get_history(target, "evidence_digest")
    if digest_history.has_changes() and any(
        old is not None for old in digest_history.deleted
    ):
        _blocked("Task", target.id, "UPDATE", "Task evidence digest is write-once")


_registered = False


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners (idempotent).

    Call this after all models are imported but before any database
    operations begin.  create_tables() calls it.
    """
    global _registered
    if _registered:
        return

    from signing_kernel.models.audit_event import AuditEvent
    from signing_kernel.models.task import TaskModel
    from signing_kernel.models.workflow import WorkflowDefinitionModel

    event.listen(AuditEvent, "before_update", _check_audit_event_immutability)
    event.listen(AuditEvent, "before_delete", _check_audit_event_delete)

    event.listen(WorkflowDefinitionModel, "before_update", _check_definition_immutability)
    event.listen(WorkflowDefinitionModel, "before_delete", _check_definition_delete)

    event.listen(TaskModel, "before_update", _check_task_immutability)

    _registered = True


def _safe_remove_listener(target, event_name, listener_fn):
    """Safely remove an event listener, ignoring if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    global _registered

    from signing_kernel.models.audit_event import AuditEvent
    from signing_kernel.models.task import TaskModel
    from signing_kernel.models.workflow import WorkflowDefinitionModel

    _safe_remove_listener(AuditEvent, "before_update", _check_audit_event_immutability)
    _safe_remove_listener(AuditEvent, "before_delete", _check_audit_event_delete)
    _safe_remove_listener(WorkflowDefinitionModel, "before_update", _check_definition_immutability)
    _safe_remove_listener(WorkflowDefinitionModel, "before_delete", _check_definition_delete)
    _safe_remove_listener(TaskModel, "before_update", _check_task_immutability)

    _registered = False
