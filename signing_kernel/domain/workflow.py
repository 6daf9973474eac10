"""
Workflow definition types (``signing_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for signing workflow graphs: node kinds, nodes, edges,
variable schema, settings and the immutable, versioned definition.  Also
defines the instance lifecycle.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* ``WorkflowDefinition.from_dict(d.to_dict()) == d`` (lossless round trip).
* ``INSTANCE_TRANSITIONS`` defines the only valid instance status changes;
  terminal states have no outgoing edges.
* Structural validity (single start, reachability, join pairing, guard
  typing) is checked by ``signing_engines.graph``, not here.

Node configuration keys
-----------------------
=================  ==========================================================
Kind               Config keys
=================  ==========================================================
signature          assignee | assignee_role, task_kind (signature, witness,
                   review), requirements, due_in_seconds, compensation
approval           assignee | assignee_role, task_kind (approval, review,
                   user_form), requirements, due_in_seconds,
                   decision_variable, output_variable, compensation
notification       channel, template_id, recipients, variables
condition          expression, result_variable
parallel_split     --
parallel_join      join_of
exclusive_gateway  -- (outgoing edge guards)
inclusive_gateway  -- (outgoing edge guards)
timer              delay_seconds | absolute
service_task       service, input, output_variable, retry_attempts,
                   compensation
script             assignments: [{variable, expression}, ...]
=================  ==========================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class NodeKind(str, Enum):
    """The thirteen node kinds of a workflow graph."""

    START = "start"
    END = "end"
    SIGNATURE = "signature"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    CONDITION = "condition"
    PARALLEL_SPLIT = "parallel_split"
    PARALLEL_JOIN = "parallel_join"
    EXCLUSIVE_GATEWAY = "exclusive_gateway"
    INCLUSIVE_GATEWAY = "inclusive_gateway"
    TIMER = "timer"
    SERVICE_TASK = "service_task"
    SCRIPT = "script"


# Nodes that materialize a task record.
TASK_NODE_KINDS: frozenset[NodeKind] = frozenset({
    NodeKind.SIGNATURE,
    NodeKind.APPROVAL,
    NodeKind.TIMER,
    NodeKind.SERVICE_TASK,
})

# Task nodes completed by a human actor through complete_task.
HUMAN_NODE_KINDS: frozenset[NodeKind] = frozenset({
    NodeKind.SIGNATURE,
    NodeKind.APPROVAL,
})

GATEWAY_NODE_KINDS: frozenset[NodeKind] = frozenset({
    NodeKind.PARALLEL_SPLIT,
    NodeKind.PARALLEL_JOIN,
    NodeKind.EXCLUSIVE_GATEWAY,
    NodeKind.INCLUSIVE_GATEWAY,
})


class EdgeRoute(str, Enum):
    """Which outcome of the source node an edge belongs to."""

    NORMAL = "normal"
    ON_ERROR = "on_error"
    ON_TIMEOUT = "on_timeout"


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    LIST = "list"
    OBJECT = "object"
    ANY = "any"


@dataclass(frozen=True)
class Node:
    """A node of the workflow graph.

    ``config`` is kind-specific (see module docstring).
    """

    id: str
    kind: NodeKind
    name: str | None = None
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def is_task_node(self) -> bool:
        return self.kind in TASK_NODE_KINDS

    @property
    def is_human_task(self) -> bool:
        return self.kind in HUMAN_NODE_KINDS

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "kind": self.kind.value}
        if self.name is not None:
            data["name"] = self.name
        if self.config:
            data["config"] = dict(self.config)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Node:
        return cls(
            id=str(data["id"]),
            kind=NodeKind(data["kind"]),
            name=data.get("name"),
            config=dict(data.get("config") or {}),
        )


@dataclass(frozen=True)
class Edge:
    """A directed edge.  ``guard`` is an expression over workflow variables.

    ``loop_back`` marks the one kind of cycle the validator accepts: an edge
    leaving an exclusive gateway towards an earlier node.
    """

    source_id: str
    target_id: str
    guard: str | None = None
    route: EdgeRoute = EdgeRoute.NORMAL
    loop_back: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"source_id": self.source_id, "target_id": self.target_id}
        if self.guard is not None:
            data["guard"] = self.guard
        if self.route is not EdgeRoute.NORMAL:
            data["route"] = self.route.value
        if self.loop_back:
            data["loop_back"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Edge:
        return cls(
            source_id=str(data["source_id"]),
            target_id=str(data["target_id"]),
            guard=data.get("guard"),
            route=EdgeRoute(data.get("route", EdgeRoute.NORMAL.value)),
            loop_back=bool(data.get("loop_back", False)),
        )


@dataclass(frozen=True)
class VariableSpec:
    """Schema entry for one workflow variable."""

    name: str
    type: VariableType = VariableType.ANY
    default: Any = None
    required: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "type": self.type.value}
        if self.default is not None:
            data["default"] = self.default
        if self.required:
            data["required"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VariableSpec:
        return cls(
            name=str(data["name"]),
            type=VariableType(data.get("type", VariableType.ANY.value)),
            default=data.get("default"),
            required=bool(data.get("required", False)),
        )


@dataclass(frozen=True)
class WorkflowSettings:
    """Execution limits and defaults.  Durations are in seconds."""

    max_execution_seconds: int | None = None
    max_parallel_tasks: int | None = None
    default_retry_attempts: int = 3
    escalation_delay_seconds: int = 72 * 3600
    reminder_interval_seconds: int = 24 * 3600
    default_due_in_seconds: int | None = None
    default_requirements: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "default_retry_attempts": self.default_retry_attempts,
            "escalation_delay_seconds": self.escalation_delay_seconds,
            "reminder_interval_seconds": self.reminder_interval_seconds,
        }
        if self.max_execution_seconds is not None:
            data["max_execution_seconds"] = self.max_execution_seconds
        if self.max_parallel_tasks is not None:
            data["max_parallel_tasks"] = self.max_parallel_tasks
        if self.default_due_in_seconds is not None:
            data["default_due_in_seconds"] = self.default_due_in_seconds
        if self.default_requirements:
            data["default_requirements"] = dict(self.default_requirements)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> WorkflowSettings:
        data = data or {}
        defaults = cls()
        return cls(
            max_execution_seconds=data.get("max_execution_seconds"),
            max_parallel_tasks=data.get("max_parallel_tasks"),
            default_retry_attempts=int(
                data.get("default_retry_attempts", defaults.default_retry_attempts)
            ),
            escalation_delay_seconds=int(
                data.get("escalation_delay_seconds", defaults.escalation_delay_seconds)
            ),
            reminder_interval_seconds=int(
                data.get("reminder_interval_seconds", defaults.reminder_interval_seconds)
            ),
            default_due_in_seconds=data.get("default_due_in_seconds"),
            default_requirements=dict(data.get("default_requirements") or {}),
        )


@dataclass(frozen=True)
class WorkflowDefinition:
    """An immutable, versioned workflow graph.

    ``version`` is 0 until the definition is registered; registration
    assigns the next version for ``workflow_id``.
    """

    workflow_id: str
    name: str
    organization_id: str
    created_by: str
    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...]
    variables: tuple[VariableSpec, ...] = ()
    settings: WorkflowSettings = field(default_factory=WorkflowSettings)
    version: int = 0
    description: str | None = None

    # -- lookups ---------------------------------------------------------

    def node(self, node_id: str) -> Node:
        for n in self.nodes:
            if n.id == node_id:
                return n
        raise KeyError(node_id)

    def node_map(self) -> dict[str, Node]:
        return {n.id: n for n in self.nodes}

    def outgoing(self, node_id: str, route: EdgeRoute | None = EdgeRoute.NORMAL) -> list[Edge]:
        """Outgoing edges in declared order, filtered by route (None = all)."""
        return [
            e for e in self.edges
            if e.source_id == node_id and (route is None or e.route is route)
        ]

    def incoming(self, node_id: str, route: EdgeRoute | None = EdgeRoute.NORMAL) -> list[Edge]:
        return [
            e for e in self.edges
            if e.target_id == node_id and (route is None or e.route is route)
        ]

    @property
    def start_node(self) -> Node:
        for n in self.nodes:
            if n.kind is NodeKind.START:
                return n
        raise KeyError("start")

    def task_nodes(self) -> list[Node]:
        return [n for n in self.nodes if n.is_task_node]

    def default_variables(self) -> dict[str, Any]:
        return {v.name: v.default for v in self.variables if v.default is not None}

    def with_version(self, version: int) -> WorkflowDefinition:
        return WorkflowDefinition(
            workflow_id=self.workflow_id,
            name=self.name,
            organization_id=self.organization_id,
            created_by=self.created_by,
            nodes=self.nodes,
            edges=self.edges,
            variables=self.variables,
            settings=self.settings,
            version=version,
            description=self.description,
        )

    # -- serialization ---------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "workflow_id": self.workflow_id,
            "version": self.version,
            "name": self.name,
            "organization_id": self.organization_id,
            "created_by": self.created_by,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "variables": [v.to_dict() for v in self.variables],
            "settings": self.settings.to_dict(),
        }
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowDefinition:
        return cls(
            workflow_id=str(data["workflow_id"]),
            version=int(data.get("version", 0)),
            name=str(data.get("name") or data["workflow_id"]),
            organization_id=str(data.get("organization_id", "")),
            created_by=str(data.get("created_by", "")),
            nodes=tuple(Node.from_dict(n) for n in data.get("nodes") or ()),
            edges=tuple(Edge.from_dict(e) for e in data.get("edges") or ()),
            variables=tuple(VariableSpec.from_dict(v) for v in data.get("variables") or ()),
            settings=WorkflowSettings.from_dict(data.get("settings")),
            description=data.get("description"),
        )


# =========================================================================
# Instance lifecycle
# =========================================================================


class InstanceStatus(str, Enum):
    """Workflow instance lifecycle states."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


INSTANCE_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.RUNNING: frozenset({
        InstanceStatus.COMPLETED,
        InstanceStatus.FAILED,
        InstanceStatus.CANCELLED,
        InstanceStatus.EXPIRED,
    }),
    InstanceStatus.COMPLETED: frozenset(),
    InstanceStatus.FAILED: frozenset(),
    InstanceStatus.CANCELLED: frozenset(),
    InstanceStatus.EXPIRED: frozenset(),
}

TERMINAL_INSTANCE_STATUSES: frozenset[InstanceStatus] = frozenset({
    InstanceStatus.COMPLETED,
    InstanceStatus.FAILED,
    InstanceStatus.CANCELLED,
    InstanceStatus.EXPIRED,
})


@dataclass(frozen=True)
class Region:
    """An open parallel (or inclusive) region on an instance.

    ``expected`` holds the first node of each fired branch; ``arrived``
    holds the node each branch token came from when it reached the join.  A region is keyed
    by the split id plus ``iteration`` so loops reopen it cleanly.
    """

    split_id: str
    join_id: str
    expected: tuple[str, ...]
    arrived: tuple[str, ...] = ()
    iteration: int = 0

    @property
    def complete(self) -> bool:
        return len(self.arrived) >= len(self.expected)

    def to_dict(self) -> dict[str, Any]:
        return {
            "split_id": self.split_id,
            "join_id": self.join_id,
            "expected": list(self.expected),
            "arrived": list(self.arrived),
            "iteration": self.iteration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Region:
        return cls(
            split_id=data["split_id"],
            join_id=data["join_id"],
            expected=tuple(data.get("expected") or ()),
            arrived=tuple(data.get("arrived") or ()),
            iteration=int(data.get("iteration", 0)),
        )
