"""
Pure domain layer.

This module contains pure value objects and domain rules with NO
dependencies on:
- ORM (SQLAlchemy)
- Database
- Wall-clock time (an injected Clock is used instead)
- I/O

All domain objects are immutable and deterministic.
"""

from signing_kernel.domain.authz import (
    Actions,
    AuthzDecision,
    AuthzRequest,
    Condition,
    ConditionOperator,
    Decision,
    LogicalOperator,
    Policy,
    PolicyEffect,
    PolicyType,
    Relations,
    RelationshipTriple,
    ResourceTypes,
)
from signing_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from signing_kernel.domain.dtos import (
    AuditEventRecord,
    CompletionResult,
    DelegationResult,
    InstanceRecord,
    InstanceView,
    StartResult,
    TaskFilters,
    TaskRecord,
)
from signing_kernel.domain.task import (
    Certificate,
    CertificateLevel,
    Evidence,
    MfaAssertion,
    Participant,
    SignatureType,
    TaskKind,
    TaskRequirements,
    TaskStatus,
    TimestampToken,
)
from signing_kernel.domain.workflow import (
    Edge,
    EdgeRoute,
    InstanceStatus,
    Node,
    NodeKind,
    VariableSpec,
    VariableType,
    WorkflowDefinition,
    WorkflowSettings,
)

__all__ = [
    "Actions",
    "AuditEventRecord",
    "AuthzDecision",
    "AuthzRequest",
    "Certificate",
    "CertificateLevel",
    "Clock",
    "CompletionResult",
    "Condition",
    "ConditionOperator",
    "Decision",
    "DelegationResult",
    "DeterministicClock",
    "Edge",
    "EdgeRoute",
    "Evidence",
    "InstanceRecord",
    "InstanceStatus",
    "InstanceView",
    "LogicalOperator",
    "MfaAssertion",
    "Node",
    "NodeKind",
    "Participant",
    "Policy",
    "PolicyEffect",
    "PolicyType",
    "Relations",
    "RelationshipTriple",
    "ResourceTypes",
    "SignatureType",
    "StartResult",
    "SystemClock",
    "TaskFilters",
    "TaskKind",
    "TaskRecord",
    "TaskRequirements",
    "TaskStatus",
    "TimestampToken",
    "VariableSpec",
    "VariableType",
    "WorkflowDefinition",
    "WorkflowSettings",
]
