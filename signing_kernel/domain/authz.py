"""
Authorization domain types (``signing_kernel.domain.authz``).

Responsibility
--------------
Pure value objects for the authorization decision point (ADP): policies
of the four types (rbac, rebac, abac, hybrid), ABAC conditions, relationship
triples, the request/decision pair and the facts gathered for an
evaluation.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  Evaluation
lives in ``signing_engines.authorization``; fact gathering and caching in
``signing_kernel.services.authorization_service``.

Invariants enforced
-------------------
* Policies are evaluated in descending ``priority`` with ``policy_id`` as
  the tie-breaker, so evaluation order never depends on storage order.
* A decision always carries a trace entry per evaluated policy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

WILDCARD = "*"


class PolicyEffect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class PolicyType(str, Enum):
    RBAC = "rbac"
    REBAC = "rebac"
    ABAC = "abac"
    HYBRID = "hybrid"


class ConditionOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES_REGEX = "matches_regex"


class LogicalOperator(str, Enum):
    """How a condition folds into its group's running result.

    NOT means "and not": ``acc and not condition``.
    """

    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class Actions:
    """Actions mediated by the ADP."""

    DEFINITION_CREATE = "definition:create"
    WORKFLOW_START = "workflow:start"
    WORKFLOW_READ = "workflow:read"
    WORKFLOW_CANCEL = "workflow:cancel"
    WORKFLOW_AUDIT = "workflow:audit"
    TASK_COMPLETE = "task:complete"
    TASK_DELEGATE = "task:delegate"
    TASK_LIST = "task:list"


class ResourceTypes:
    ORGANIZATION = "organization"
    WORKFLOW_DEFINITION = "workflow_definition"
    WORKFLOW_INSTANCE = "workflow_instance"
    TASK = "task"
    USER = "user"
    DOCUMENT = "document"


class Relations:
    """Relation names of the relationship store."""

    ORG_MEMBER = "org_member"
    ORG_ADMIN = "org_admin"
    TASK_ASSIGNEE = "task_assignee"
    WORKFLOW_INITIATOR = "workflow_initiator"
    WORKFLOW_PARTICIPANT = "workflow_participant"
    DOCUMENT_OWNER = "document_owner"
    DOCUMENT_SIGNER = "document_signer"
    # Holds implicitly when subject == resource.
    SELF = "self"


@dataclass(frozen=True)
class Condition:
    """One ABAC condition."""

    attribute_path: str
    operator: ConditionOperator
    value: Any = None
    group: str | None = None
    logical_operator: LogicalOperator = LogicalOperator.AND

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "attribute_path": self.attribute_path,
            "operator": self.operator.value,
            "value": self.value,
        }
        if self.group is not None:
            data["group"] = self.group
        if self.logical_operator is not LogicalOperator.AND:
            data["logical_operator"] = self.logical_operator.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        value = data.get("value")
        if isinstance(value, list):
            value = tuple(value)
        return cls(
            attribute_path=str(data["attribute_path"]),
            operator=ConditionOperator(data["operator"]),
            value=value,
            group=data.get("group"),
            logical_operator=LogicalOperator(
                str(data.get("logical_operator", "AND")).upper()
            ),
        )


@dataclass(frozen=True)
class PolicyTarget:
    """(resource_type, action) a policy applies to; either may be ``*``."""

    resource_type: str
    action: str

    def matches(self, resource_type: str, action: str) -> bool:
        return (
            self.resource_type in (WILDCARD, resource_type)
            and self.action in (WILDCARD, action)
        )


@dataclass(frozen=True)
class Policy:
    """An ADP policy.  Higher ``priority`` is evaluated first."""

    policy_id: str
    name: str
    type: PolicyType
    effect: PolicyEffect
    priority: int = 0
    enabled: bool = True
    targets: tuple[PolicyTarget, ...] = ()
    roles: tuple[str, ...] = ()
    permissions: tuple[str, ...] = ()
    relationships: tuple[str, ...] = ()
    conditions: tuple[Condition, ...] = ()
    description: str | None = None

    def applies_to(self, resource_type: str, action: str) -> bool:
        return any(t.matches(resource_type, action) for t in self.targets)

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "name": self.name,
            "type": self.type.value,
            "effect": self.effect.value,
            "priority": self.priority,
            "enabled": self.enabled,
            "targets": [
                {"resource_type": t.resource_type, "action": t.action}
                for t in self.targets
            ],
            "roles": list(self.roles),
            "permissions": list(self.permissions),
            "relationships": list(self.relationships),
            "conditions": [c.to_dict() for c in self.conditions],
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Policy:
        targets = data.get("targets")
        if targets is None:
            # Shorthand: resource_types x actions
            resource_types = data.get("resource_types") or [WILDCARD]
            actions = data.get("actions") or [WILDCARD]
            targets = [
                {"resource_type": rt, "action": a}
                for rt in resource_types for a in actions
            ]
        return cls(
            policy_id=str(data["policy_id"]),
            name=str(data.get("name") or data["policy_id"]),
            type=PolicyType(data["type"]),
            effect=PolicyEffect(data["effect"]),
            priority=int(data.get("priority", 0)),
            enabled=bool(data.get("enabled", True)),
            targets=tuple(
                PolicyTarget(str(t["resource_type"]), str(t["action"])) for t in targets
            ),
            roles=tuple(data.get("roles") or ()),
            permissions=tuple(data.get("permissions") or ()),
            relationships=tuple(data.get("relationships") or ()),
            conditions=tuple(Condition.from_dict(c) for c in data.get("conditions") or ()),
            description=data.get("description"),
        )


def policy_sort_key(policy: Policy) -> tuple[int, str]:
    """Descending priority, then policy_id."""
    return (-policy.priority, policy.policy_id)


@dataclass(frozen=True)
class RelationshipTriple:
    """(subject) --relation--> (object of object_type)."""

    subject: str
    relation: str
    object: str
    object_type: str


@dataclass(frozen=True)
class AuthzRequest:
    """Input of an authorization decision."""

    subject: str
    action: str
    resource: str
    resource_type: str
    user_attrs: dict[str, Any] = field(default_factory=dict)
    resource_attrs: dict[str, Any] = field(default_factory=dict)
    env_attrs: dict[str, Any] = field(default_factory=dict)
    client_info: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthzFacts:
    """Everything the pure evaluator needs, gathered from the stores.

    ``relations`` are direct relations subject->resource; ``org_relations``
    are relations held by an organization the subject is a member of.
    """

    roles: frozenset[str] = frozenset()
    role_permissions: dict[str, frozenset[str]] = field(default_factory=dict)
    relations: frozenset[str] = frozenset()
    org_relations: frozenset[str] = frozenset()
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyEvaluation:
    """Trace entry for one evaluated policy."""

    policy_id: str
    effect: PolicyEffect
    matched: bool
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "effect": self.effect.value,
            "matched": self.matched,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class AuthzDecision:
    """Output of an authorization decision."""

    decision: Decision
    reason: str
    matched_policies: tuple[str, ...] = ()
    trace: tuple[PolicyEvaluation, ...] = ()
    evaluation_id: str | None = None
    cached: bool = False

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.ALLOW

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "reason": self.reason,
            "matched_policies": list(self.matched_policies),
            "trace": [t.to_dict() for t in self.trace],
            "evaluation_id": self.evaluation_id,
            "cached": self.cached,
        }
