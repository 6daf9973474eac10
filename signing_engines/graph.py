"""
signing_engines.graph -- Workflow graph validation and analysis.

Responsibility:
    Structural validation of workflow definitions, pairing of splits with
    joins, task dependency analysis, region membership and the advisory
    critical-path duration estimate.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import signing_kernel/domain types, utils and sibling engines.

Invariants enforced:
    - A definition is accepted only when ``validate_definition`` returns no
      issues: one start, at least one end, every node reachable and able to
      reach an end, acyclic apart from loop-back edges leaving an exclusive
      gateway, every split paired 1:1 with a parallel_join of equal degree,
      expressions parse and type-check, node configs well formed.
    - Dependencies are node ids.  A task node depends on every task node
      that completes on every normal path from start to it: union across a
      parallel join, intersection across alternative routes.  Loop-back
      edges are ignored.

Failure modes:
    - ``assert_valid`` raises WorkflowValidationError with every issue.
    - Analysis helpers assume a valid definition.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from signing_engines.expressions import type_check
from signing_engines.tracer import traced_engine
from signing_kernel.domain.task import TaskKind, TaskRequirements
from signing_kernel.domain.workflow import (
    HUMAN_NODE_KINDS,
    TASK_NODE_KINDS,
    EdgeRoute,
    Node,
    NodeKind,
    VariableType,
    WorkflowDefinition,
)
from signing_kernel.exceptions import WorkflowValidationError
from signing_kernel.utils.rfc3339 import parse_utc


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found in a definition."""

    code: str
    message: str
    node_id: str | None = None

    def __str__(self) -> str:
        where = f" [{self.node_id}]" if self.node_id else ""
        return f"{self.code}{where}: {self.message}"

    def to_dict(self) -> dict[str, str | None]:
        return {"code": self.code, "message": self.message, "node_id": self.node_id}


# =========================================================================
# Node config conventions
# =========================================================================


def decision_variable(node: Node) -> str:
    return str(node.config.get("decision_variable") or f"{node.id}_decision")


def condition_result_variable(node: Node) -> str:
    return str(node.config.get("result_variable") or f"{node.id}_result")


def task_kind_for(node: Node) -> TaskKind:
    """Task kind materialized for a task-bearing node."""
    if node.kind is NodeKind.TIMER:
        return TaskKind.TIMER
    if node.kind is NodeKind.SERVICE_TASK:
        return TaskKind.SERVICE_CALL
    configured = node.config.get("task_kind")
    if configured:
        return TaskKind(configured)
    return TaskKind.SIGNATURE if node.kind is NodeKind.SIGNATURE else TaskKind.APPROVAL


def node_due_seconds(node: Node, definition: WorkflowDefinition) -> int | None:
    """Seconds from entry until the node's task is due (timers: the delay)."""
    if node.kind is NodeKind.TIMER:
        delay = node.config.get("delay_seconds")
        return int(delay) if delay is not None else None
    if node.kind in HUMAN_NODE_KINDS:
        due = node.config.get("due_in_seconds", definition.settings.default_due_in_seconds)
        return int(due) if due is not None else None
    return None


def is_split(definition: WorkflowDefinition, node: Node) -> bool:
    if node.kind is NodeKind.PARALLEL_SPLIT:
        return True
    return (
        node.kind is NodeKind.INCLUSIVE_GATEWAY
        and len(definition.outgoing(node.id)) > 1
    )


def produced_variables(definition: WorkflowDefinition) -> dict[str, VariableType]:
    """Variables declared in the schema plus those written by nodes."""
    schema = {v.name: v.type for v in definition.variables}
    for node in definition.nodes:
        if node.kind is NodeKind.APPROVAL:
            schema.setdefault(decision_variable(node), VariableType.STRING)
            if node.config.get("output_variable"):
                schema.setdefault(str(node.config["output_variable"]), VariableType.ANY)
        elif node.kind is NodeKind.CONDITION:
            schema.setdefault(condition_result_variable(node), VariableType.BOOLEAN)
        elif node.kind is NodeKind.SERVICE_TASK and node.config.get("output_variable"):
            schema.setdefault(str(node.config["output_variable"]), VariableType.ANY)
        elif node.kind is NodeKind.SCRIPT:
            for assignment in node.config.get("assignments") or ():
                if isinstance(assignment, dict) and assignment.get("variable"):
                    schema.setdefault(str(assignment["variable"]), VariableType.ANY)
    return schema


# =========================================================================
# Traversal helpers
# =========================================================================


def _forward_edges(definition: WorkflowDefinition, normal_only: bool = True) -> dict[str, list[str]]:
    """Adjacency without loop-back edges, in declared order."""
    adjacency: dict[str, list[str]] = {n.id: [] for n in definition.nodes}
    for edge in definition.edges:
        if edge.loop_back:
            continue
        if normal_only and edge.route is not EdgeRoute.NORMAL:
            continue
        if edge.source_id in adjacency and edge.target_id in adjacency:
            adjacency[edge.source_id].append(edge.target_id)
    return adjacency


def _reachable(adjacency: dict[str, list[str]], roots: Iterable[str]) -> set[str]:
    seen: set[str] = set()
    queue = deque(roots)
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        queue.extend(adjacency.get(current, ()))
    return seen


def topological_order(definition: WorkflowDefinition) -> list[str]:
    """Kahn order over all non-loop-back edges; raises ValueError on a cycle."""
    adjacency = _forward_edges(definition, normal_only=False)
    in_degree = {node_id: 0 for node_id in adjacency}
    for targets in adjacency.values():
        for target in targets:
            in_degree[target] += 1
    declared = [n.id for n in definition.nodes]
    ready = deque(node_id for node_id in declared if in_degree[node_id] == 0)
    order: list[str] = []
    while ready:
        current = ready.popleft()
        order.append(current)
        for target in adjacency[current]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                ready.append(target)
    if len(order) != len(adjacency):
        raise ValueError("graph has a cycle outside loop-back edges")
    return order


# =========================================================================
# Split / join pairing
# =========================================================================


def _post_dominators(definition: WorkflowDefinition) -> dict[str, frozenset[str]]:
    adjacency = _forward_edges(definition)
    order = topological_order(definition)
    pdom: dict[str, frozenset[str]] = {}
    for node_id in reversed(order):
        successors = adjacency[node_id]
        if not successors:
            pdom[node_id] = frozenset({node_id})
            continue
        common = frozenset.intersection(*(pdom[s] for s in successors))
        pdom[node_id] = common | {node_id}
    return pdom


def pair_splits(definition: WorkflowDefinition) -> dict[str, str]:
    """Map split id -> join id (explicit ``join_of`` or immediate post-dominator)."""
    nodes = definition.node_map()
    explicit = {
        str(n.config["join_of"]): n.id
        for n in definition.nodes
        if n.kind is NodeKind.PARALLEL_JOIN and n.config.get("join_of")
    }
    pdom = _post_dominators(definition)
    pairs: dict[str, str] = {}
    for node in definition.nodes:
        if not is_split(definition, node):
            continue
        if node.id in explicit:
            pairs[node.id] = explicit[node.id]
            continue
        candidates = pdom[node.id] - {node.id}
        if not candidates:
            continue
        nearest = max(candidates, key=lambda c: len(pdom[c]))
        if nodes[nearest].kind is NodeKind.PARALLEL_JOIN:
            pairs[node.id] = nearest
    return pairs


def region_nodes(definition: WorkflowDefinition, split_id: str, join_id: str) -> frozenset[str]:
    """Nodes strictly between a split and its join."""
    adjacency = _forward_edges(definition, normal_only=False)
    reverse: dict[str, list[str]] = {node_id: [] for node_id in adjacency}
    for source, targets in adjacency.items():
        for target in targets:
            reverse[target].append(source)
    after_split = _reachable(adjacency, adjacency[split_id])
    before_join = _reachable(reverse, reverse[join_id])
    return frozenset((after_split & before_join) - {split_id, join_id})


# =========================================================================
# Dependencies
# =========================================================================


@traced_engine("graph_dependencies", "1.0", fingerprint_fields=("definition",))
def compute_dependencies(definition: WorkflowDefinition) -> dict[str, frozenset[str]]:
    """Must-complete task ancestors of every task node."""
    nodes = definition.node_map()
    pairs = pair_splits(definition)
    inclusive_joins = {
        join_id for split_id, join_id in pairs.items()
        if nodes[split_id].kind is NodeKind.INCLUSIVE_GATEWAY
    }

    must: dict[str, frozenset[str]] = {}
    for node_id in topological_order(definition):
        contributions: list[frozenset[str]] = []
        for edge in definition.incoming(node_id, route=None):
            if edge.loop_back or edge.source_id not in must:
                continue
            carried = must[edge.source_id]
            source = nodes[edge.source_id]
            if edge.route is EdgeRoute.NORMAL and source.kind in TASK_NODE_KINDS:
                carried = carried | {source.id}
            contributions.append(carried)

        node = nodes[node_id]
        if not contributions:
            must[node_id] = frozenset()
        elif node.kind is NodeKind.PARALLEL_JOIN and node_id not in inclusive_joins:
            must[node_id] = frozenset().union(*contributions)
        else:
            must[node_id] = frozenset.intersection(*contributions)

    return {
        node.id: must.get(node.id, frozenset())
        for node in definition.nodes
        if node.kind in TASK_NODE_KINDS
    }


# =========================================================================
# Duration estimate
# =========================================================================


def predict_duration(definition: WorkflowDefinition) -> int:
    """Critical-path sum of task due durations, in seconds (advisory)."""
    nodes = definition.node_map()
    adjacency = _forward_edges(definition)
    longest: dict[str, int] = {}
    for node_id in reversed(topological_order(definition)):
        own = node_due_seconds(nodes[node_id], definition) or 0
        tail = max((longest[s] for s in adjacency[node_id]), default=0)
        longest[node_id] = own + tail
    return longest.get(definition.start_node.id, 0)


# =========================================================================
# Validation
# =========================================================================


def _structure_issues(definition: WorkflowDefinition) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    seen: set[str] = set()
    for node in definition.nodes:
        if node.id in seen:
            issues.append(ValidationIssue("DUPLICATE_NODE", f"node id {node.id!r} is declared twice", node.id))
        seen.add(node.id)

    for edge in definition.edges:
        for endpoint in (edge.source_id, edge.target_id):
            if endpoint not in seen:
                issues.append(ValidationIssue(
                    "UNKNOWN_EDGE_ENDPOINT",
                    f"edge {edge.source_id}->{edge.target_id} references unknown node {endpoint!r}",
                ))

    starts = [n for n in definition.nodes if n.kind is NodeKind.START]
    ends = [n for n in definition.nodes if n.kind is NodeKind.END]
    if len(starts) != 1:
        issues.append(ValidationIssue("START_COUNT", f"expected exactly one start node, found {len(starts)}"))
    if not ends:
        issues.append(ValidationIssue("NO_END", "definition has no end node"))
    return issues


def _connectivity_issues(definition: WorkflowDefinition) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    nodes = definition.node_map()
    start = definition.start_node

    for node in definition.nodes:
        if node.kind is NodeKind.START and definition.incoming(node.id, route=None):
            issues.append(ValidationIssue("START_HAS_INCOMING", "start node has incoming edges", node.id))
        if node.kind is NodeKind.END and definition.outgoing(node.id, route=None):
            issues.append(ValidationIssue("END_HAS_OUTGOING", "end node has outgoing edges", node.id))
        if node.kind is not NodeKind.END and not definition.outgoing(node.id):
            issues.append(ValidationIssue("NO_OUTGOING", "node has no normal outgoing edge", node.id))

    all_edges: dict[str, list[str]] = {n.id: [] for n in definition.nodes}
    reverse: dict[str, list[str]] = {n.id: [] for n in definition.nodes}
    for edge in definition.edges:
        all_edges[edge.source_id].append(edge.target_id)
        reverse[edge.target_id].append(edge.source_id)

    reachable = _reachable(all_edges, [start.id])
    for node in definition.nodes:
        if node.id not in reachable:
            issues.append(ValidationIssue("UNREACHABLE", "node is not reachable from start", node.id))

    reaches_end = _reachable(reverse, [n.id for n in definition.nodes if n.kind is NodeKind.END])
    for node in definition.nodes:
        if node.id in reachable and node.id not in reaches_end:
            issues.append(ValidationIssue("DEAD_END", "node cannot reach an end node", node.id))

    for edge in definition.edges:
        source = nodes[edge.source_id]
        if edge.loop_back and source.kind is not NodeKind.EXCLUSIVE_GATEWAY:
            issues.append(ValidationIssue(
                "LOOP_BACK_SOURCE",
                f"loop-back edge to {edge.target_id!r} must leave an exclusive gateway",
                source.id,
            ))
        if edge.route is EdgeRoute.ON_ERROR and source.kind not in TASK_NODE_KINDS:
            issues.append(ValidationIssue("ROUTE_SOURCE", "on_error edges must leave a task node", source.id))
        if edge.route is EdgeRoute.ON_TIMEOUT and source.kind not in (
            NodeKind.SIGNATURE, NodeKind.APPROVAL, NodeKind.TIMER
        ):
            issues.append(ValidationIssue(
                "ROUTE_SOURCE", "on_timeout edges must leave a human or timer task node", source.id
            ))

    try:
        topological_order(definition)
    except ValueError:
        issues.append(ValidationIssue("CYCLE", "graph has a cycle that is not a declared loop-back"))
    return issues


def _pairing_issues(definition: WorkflowDefinition) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    nodes = definition.node_map()
    pairs = pair_splits(definition)

    for node in definition.nodes:
        if is_split(definition, node) and node.id not in pairs:
            issues.append(ValidationIssue("UNPAIRED_SPLIT", "split has no matching parallel_join", node.id))
        join_of = node.config.get("join_of") if node.kind is NodeKind.PARALLEL_JOIN else None
        if join_of is not None and (join_of not in nodes or not is_split(definition, nodes[join_of])):
            issues.append(ValidationIssue("JOIN_OF_INVALID", f"join_of {join_of!r} is not a split", node.id))

    joins_used: dict[str, list[str]] = {}
    for split_id, join_id in pairs.items():
        joins_used.setdefault(join_id, []).append(split_id)
        if nodes[join_id].kind is not NodeKind.PARALLEL_JOIN:
            issues.append(ValidationIssue("JOIN_KIND", f"{join_id!r} is not a parallel_join", split_id))
            continue
        out_degree = len(definition.outgoing(split_id))
        in_degree = len([e for e in definition.incoming(join_id) if not e.loop_back])
        if out_degree != in_degree:
            issues.append(ValidationIssue(
                "JOIN_DEGREE_MISMATCH",
                f"join {join_id!r} has {in_degree} incoming edges, split has {out_degree} outgoing",
                split_id,
            ))

    for join_id, splits in joins_used.items():
        if len(splits) > 1:
            issues.append(ValidationIssue(
                "JOIN_PAIRING", f"join is claimed by several splits: {sorted(splits)}", join_id
            ))
    for node in definition.nodes:
        if node.kind is NodeKind.PARALLEL_JOIN and node.id not in joins_used:
            issues.append(ValidationIssue("UNPAIRED_JOIN", "parallel_join has no matching split", node.id))
    return issues


def _positive(value, allow_zero: bool = False) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return value >= 0 if allow_zero else value > 0


def _config_issues(definition: WorkflowDefinition) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for node in definition.nodes:
        config = node.config
        if node.kind in HUMAN_NODE_KINDS:
            if not config.get("assignee") and not config.get("assignee_role"):
                issues.append(ValidationIssue("MISSING_ASSIGNEE", "human task needs assignee or assignee_role", node.id))
            elif isinstance(config.get("assignee"), dict) and not config["assignee"].get("id"):
                issues.append(ValidationIssue("MISSING_ASSIGNEE", "inline assignee needs an id", node.id))
            try:
                task_kind_for(node)
                TaskRequirements.merged(definition.settings.default_requirements, config.get("requirements"))
            except (ValueError, TypeError, KeyError) as exc:
                issues.append(ValidationIssue("INVALID_TASK_CONFIG", str(exc), node.id))
            if "due_in_seconds" in config and not _positive(config["due_in_seconds"]):
                issues.append(ValidationIssue("INVALID_DUE", "due_in_seconds must be positive", node.id))
        elif node.kind is NodeKind.TIMER:
            if "delay_seconds" in config:
                if not _positive(config["delay_seconds"], allow_zero=True):
                    issues.append(ValidationIssue("TIMER_CONFIG", "delay_seconds must be >= 0", node.id))
            elif "absolute" in config:
                try:
                    parse_utc(str(config["absolute"]))
                except ValueError:
                    issues.append(ValidationIssue("TIMER_CONFIG", "absolute is not an RFC 3339 timestamp", node.id))
            else:
                issues.append(ValidationIssue("TIMER_CONFIG", "timer needs delay_seconds or absolute", node.id))
        elif node.kind is NodeKind.SERVICE_TASK:
            if not config.get("service"):
                issues.append(ValidationIssue("MISSING_SERVICE", "service_task needs a service name", node.id))
            if "retry_attempts" in config and not _positive(config["retry_attempts"], allow_zero=True):
                issues.append(ValidationIssue("INVALID_RETRY", "retry_attempts must be >= 0", node.id))
            compensation = config.get("compensation")
            if compensation is not None and not (isinstance(compensation, dict) and compensation.get("service")):
                issues.append(ValidationIssue(
                    "COMPENSATION_CONFIG", "compensation needs a service name", node.id
                ))
        elif node.kind is NodeKind.CONDITION:
            if not config.get("expression"):
                issues.append(ValidationIssue("MISSING_EXPRESSION", "condition needs an expression", node.id))
        elif node.kind is NodeKind.NOTIFICATION:
            if not config.get("template_id"):
                issues.append(ValidationIssue("NOTIFICATION_CONFIG", "notification needs a template_id", node.id))
        elif node.kind is NodeKind.SCRIPT:
            assignments = config.get("assignments")
            if not isinstance(assignments, list) or not assignments or not all(
                isinstance(a, dict) and a.get("variable") and a.get("expression") for a in assignments
            ):
                issues.append(ValidationIssue(
                    "SCRIPT_CONFIG", "script needs assignments of {variable, expression}", node.id
                ))

    settings = definition.settings
    if settings.max_execution_seconds is not None and not _positive(settings.max_execution_seconds):
        issues.append(ValidationIssue("INVALID_SETTINGS", "max_execution_seconds must be positive"))
    if settings.max_parallel_tasks is not None and not _positive(settings.max_parallel_tasks):
        issues.append(ValidationIssue("INVALID_SETTINGS", "max_parallel_tasks must be positive"))
    if not _positive(settings.default_retry_attempts, allow_zero=True):
        issues.append(ValidationIssue("INVALID_SETTINGS", "default_retry_attempts must be >= 0"))
    if not _positive(settings.escalation_delay_seconds):
        issues.append(ValidationIssue("INVALID_SETTINGS", "escalation_delay_seconds must be positive"))
    if not _positive(settings.reminder_interval_seconds):
        issues.append(ValidationIssue("INVALID_SETTINGS", "reminder_interval_seconds must be positive"))
    return issues


def _expression_issues(definition: WorkflowDefinition) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    schema = produced_variables(definition)

    for edge in definition.edges:
        if edge.guard is None:
            continue
        for problem in type_check(edge.guard, schema, expect_boolean=True):
            issues.append(ValidationIssue(
                "INVALID_GUARD", f"guard {edge.guard!r} on {edge.source_id}->{edge.target_id}: {problem}",
                edge.source_id,
            ))

    for node in definition.nodes:
        if node.kind is NodeKind.CONDITION and node.config.get("expression"):
            expression = str(node.config["expression"])
            for problem in type_check(expression, schema, expect_boolean=True):
                issues.append(ValidationIssue("INVALID_EXPRESSION", f"{expression!r}: {problem}", node.id))
        elif node.kind is NodeKind.SCRIPT:
            for assignment in node.config.get("assignments") or ():
                if not isinstance(assignment, dict) or not assignment.get("expression"):
                    continue
                expression = str(assignment["expression"])
                for problem in type_check(expression, schema):
                    issues.append(ValidationIssue("INVALID_EXPRESSION", f"{expression!r}: {problem}", node.id))
        elif node.kind is NodeKind.SERVICE_TASK:
            issues.extend(_payload_issues(node.config.get("input"), schema, node.id))
            compensation = node.config.get("compensation")
            if isinstance(compensation, dict):
                issues.extend(_payload_issues(compensation.get("input"), schema, node.id))
    return issues


def _payload_issues(spec: Any, schema: Mapping[str, VariableType], node_id: str) -> list[ValidationIssue]:
    # String inputs are expressions (text literals are quoted); other values are literals.
    if not isinstance(spec, dict):
        return []
    issues: list[ValidationIssue] = []
    for expression in spec.values():
        if not isinstance(expression, str):
            continue
        for problem in type_check(expression, schema):
            issues.append(ValidationIssue("INVALID_EXPRESSION", f"{expression!r}: {problem}", node_id))
    return issues


@traced_engine("graph_validation", "1.0", fingerprint_fields=("definition",))
def validate_definition(definition: WorkflowDefinition) -> list[ValidationIssue]:
    """Every problem of a definition; an empty list means valid."""
    issues = _structure_issues(definition)
    if issues:
        # Later checks assume unique ids, known endpoints and one start.
        return issues
    issues.extend(_connectivity_issues(definition))
    issues.extend(_config_issues(definition))
    issues.extend(_expression_issues(definition))
    if not any(i.code == "CYCLE" for i in issues):
        issues.extend(_pairing_issues(definition))
    return issues


def assert_valid(definition: WorkflowDefinition) -> None:
    """Raise WorkflowValidationError listing every issue, if any."""
    issues = validate_definition(definition)
    if issues:
        raise WorkflowValidationError(definition.workflow_id, issues)
