"""
signing_engines.authorization -- Pure policy evaluation for the ADP.

Responsibility:
    Evaluate RBAC, ReBAC, ABAC and hybrid policies against an
    authorization request and the facts gathered for it, producing a
    decision with a per-policy trace.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Facts (roles, relations, stored attributes) are gathered by
    ``signing_kernel.services.authorization_service`` and passed in.

Invariants enforced:
    - Deterministic ordering: policies are evaluated by descending
      priority with policy_id as tie-breaker.
    - Deny overrides: any matching deny decides, whatever its priority;
      otherwise the matching allows decide and the highest ranked one
      names the reason; otherwise default deny.
    - Purity: identical (policies, request, facts) give an identical
      decision and trace.  Evaluation ids are assigned by the caller.

Failure modes:
    - A policy that raises while being evaluated is recorded as not
      matched with the error as its reason; evaluation continues.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import datetime
from functools import lru_cache
from typing import Any

from signing_engines.tracer import traced_engine
from signing_kernel.domain.authz import (
    WILDCARD,
    AuthzDecision,
    AuthzFacts,
    AuthzRequest,
    Condition,
    ConditionOperator,
    Decision,
    LogicalOperator,
    Policy,
    PolicyEffect,
    PolicyEvaluation,
    PolicyType,
    policy_sort_key,
)
from signing_kernel.utils.rfc3339 import format_utc

DEFAULT_GROUP = "default"
UNKNOWN = "unknown"


# =========================================================================
# Attribute map
# =========================================================================


def _flatten(prefix: str, values: Mapping[str, Any], out: dict[str, Any]) -> None:
    for key, value in values.items():
        key = str(key)
        path = key if key.startswith(prefix + ".") else f"{prefix}.{key}"
        out[path] = value
        if isinstance(value, Mapping):
            _flatten(path, value, out)


def environment_attributes(now: datetime, client_info: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Environment attributes derived from the injected clock and client info.

    ``env.day_of_week`` counts from Sunday = 0.
    """
    client_info = client_info or {}
    return {
        "env.time_of_day": now.hour,
        "env.day_of_week": (now.weekday() + 1) % 7,
        "env.timestamp": format_utc(now),
        "env.ip_address": client_info.get("ip_address") or UNKNOWN,
        "env.user_agent": client_info.get("user_agent") or UNKNOWN,
    }


def build_attribute_map(
    request: AuthzRequest,
    stored_user: Mapping[str, Any] | None = None,
    stored_resource: Mapping[str, Any] | None = None,
    environment: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Flat ABAC attribute map: stored attributes overlaid by request attributes."""
    attributes: dict[str, Any] = {}
    _flatten("user", stored_user or {}, attributes)
    _flatten("resource", stored_resource or {}, attributes)
    attributes.update(environment or {})
    _flatten("user", request.user_attrs, attributes)
    _flatten("resource", request.resource_attrs, attributes)
    _flatten("env", request.env_attrs, attributes)
    _flatten("client", request.client_info, attributes)
    attributes["subject.id"] = request.subject
    attributes["resource.id"] = request.resource
    attributes["resource.type"] = request.resource_type
    attributes["action"] = request.action
    return attributes


# =========================================================================
# Conditions
# =========================================================================


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def _contains(container: Any, value: Any) -> bool:
    if isinstance(container, (list, tuple, set, frozenset)):
        return value in container
    if isinstance(container, Mapping):
        return value in container
    return str(value) in str(container)


def _is_reference(value: Any) -> bool:
    return isinstance(value, Mapping) and set(value) == {"attribute"}


def evaluate_condition(condition: Condition, attributes: Mapping[str, Any]) -> bool:
    """One condition against the attribute map.  Missing attribute: False.

    A value of the form ``{"attribute": "<path>"}`` compares against another
    attribute of the map instead of a literal.
    """
    if condition.attribute_path not in attributes:
        return False
    actual = attributes[condition.attribute_path]
    expected = condition.value
    if _is_reference(expected):
        path = str(expected["attribute"])
        if path not in attributes:
            return False
        expected = attributes[path]
        if isinstance(expected, list):
            expected = tuple(expected)
    op = condition.operator

    try:
        if op is ConditionOperator.EQ:
            return actual == expected
        if op is ConditionOperator.NEQ:
            return actual != expected
        if op in (ConditionOperator.LT, ConditionOperator.LTE, ConditionOperator.GT, ConditionOperator.GTE):
            if actual is None or expected is None:
                return False
            if isinstance(actual, bool) != isinstance(expected, bool):
                return False
            if op is ConditionOperator.LT:
                return actual < expected
            if op is ConditionOperator.LTE:
                return actual <= expected
            if op is ConditionOperator.GT:
                return actual > expected
            return actual >= expected
        if op is ConditionOperator.IN:
            return isinstance(expected, (list, tuple, set, frozenset)) and actual in expected
        if op is ConditionOperator.NOT_IN:
            return isinstance(expected, (list, tuple, set, frozenset)) and actual not in expected
        if op is ConditionOperator.CONTAINS:
            return _contains(actual, expected)
        if op is ConditionOperator.NOT_CONTAINS:
            return not _contains(actual, expected)
        if op is ConditionOperator.STARTS_WITH:
            return str(actual).startswith(str(expected))
        if op is ConditionOperator.ENDS_WITH:
            return str(actual).endswith(str(expected))
        if op is ConditionOperator.MATCHES_REGEX:
            return _compile(str(expected)).search(str(actual)) is not None
    except (TypeError, re.error):
        return False
    return False


def combine_conditions(conditions: Iterable[Condition], attributes: Mapping[str, Any]) -> bool:
    """Group conditions, fold each group left to right, require every group."""
    groups: dict[str, list[tuple[Condition, bool]]] = {}
    for condition in conditions:
        groups.setdefault(condition.group or DEFAULT_GROUP, []).append(
            (condition, evaluate_condition(condition, attributes))
        )

    for members in groups.values():
        result = members[0][1]
        for condition, current in members[1:]:
            if condition.logical_operator is LogicalOperator.OR:
                result = result or current
            elif condition.logical_operator is LogicalOperator.NOT:
                result = result and not current
            else:
                result = result and current
        if not result:
            return False
    return True


# =========================================================================
# Per-type evaluation
# =========================================================================


def _granted(roles: Iterable[str], facts: AuthzFacts) -> set[str]:
    granted: set[str] = set()
    for role in roles:
        granted |= set(facts.role_permissions.get(role, ()))
    return granted


def _rbac(policy: Policy, request: AuthzRequest, facts: AuthzFacts) -> tuple[bool, str]:
    if not policy.roles and not policy.permissions:
        return False, "RBAC policy lists no roles or permissions"
    if policy.roles:
        matching = facts.roles & set(policy.roles)
        if not matching:
            return False, "subject lacks required roles"
    else:
        matching = set(facts.roles)
    if policy.permissions:
        granted = _granted(matching, facts) | set(policy.permissions)
        if request.action not in granted and WILDCARD not in granted:
            return False, "action not permitted by subject roles"
    return True, f"RBAC matched roles: {', '.join(sorted(matching)) or '-'}"


def _rebac(policy: Policy, request: AuthzRequest, facts: AuthzFacts) -> tuple[bool, str]:
    for relation in policy.relationships:
        if relation in facts.relations:
            return True, f"ReBAC matched relationship: {relation}"
    for relation in policy.relationships:
        if relation in facts.org_relations:
            return True, f"ReBAC matched indirect relationship: {relation}"
    return False, "no matching relationships"


def _abac(policy: Policy, request: AuthzRequest, facts: AuthzFacts) -> tuple[bool, str]:
    if combine_conditions(policy.conditions, facts.attributes):
        return True, "ABAC conditions satisfied"
    return False, "ABAC conditions not met"


def _hybrid(policy: Policy, request: AuthzRequest, facts: AuthzFacts) -> tuple[bool, str]:
    if not (policy.roles or policy.permissions or policy.relationships or policy.conditions):
        return False, "hybrid: no sections declared"
    failures: list[str] = []
    if policy.roles or policy.permissions:
        matched, reason = _rbac(policy, request, facts)
        if not matched:
            failures.append(reason)
    if policy.relationships:
        matched, reason = _rebac(policy, request, facts)
        if not matched:
            failures.append(reason)
    if policy.conditions:
        matched, reason = _abac(policy, request, facts)
        if not matched:
            failures.append(reason)
    if failures:
        return False, "hybrid failed: " + "; ".join(failures)
    return True, "hybrid: all sections matched"


_EVALUATORS = {
    PolicyType.RBAC: _rbac,
    PolicyType.REBAC: _rebac,
    PolicyType.ABAC: _abac,
    PolicyType.HYBRID: _hybrid,
}


def evaluate_policy(policy: Policy, request: AuthzRequest, facts: AuthzFacts) -> PolicyEvaluation:
    if not policy.enabled:
        return PolicyEvaluation(policy.policy_id, policy.effect, False, "policy disabled")
    try:
        matched, reason = _EVALUATORS[policy.type](policy, request, facts)
    except Exception as exc:  # noqa: BLE001
        return PolicyEvaluation(policy.policy_id, policy.effect, False, f"evaluation error: {exc}")
    return PolicyEvaluation(policy.policy_id, policy.effect, matched, reason)


def applicable_policies(policies: Iterable[Policy], request: AuthzRequest) -> list[Policy]:
    """Enabled policies targeting (resource_type, action), in evaluation order."""
    return sorted(
        (p for p in policies if p.enabled and p.applies_to(request.resource_type, request.action)),
        key=policy_sort_key,
    )


@traced_engine("authorization", "1.0", fingerprint_fields=("request",))
def evaluate_policies(
    policies: Iterable[Policy],
    request: AuthzRequest,
    facts: AuthzFacts,
) -> AuthzDecision:
    """Decide a request.  Never raises."""
    ordered = applicable_policies(policies, request)
    if not ordered:
        return AuthzDecision(decision=Decision.DENY, reason="no applicable policies")

    trace: list[PolicyEvaluation] = []
    allowed_by: list[str] = []
    for policy in ordered:
        evaluation = evaluate_policy(policy, request, facts)
        trace.append(evaluation)
        if not evaluation.matched:
            continue
        if policy.effect is PolicyEffect.DENY:
            return AuthzDecision(
                decision=Decision.DENY,
                reason=f"denied by policy: {policy.name}",
                matched_policies=(policy.policy_id,),
                trace=tuple(trace),
            )
        allowed_by.append(policy.policy_id)

    if allowed_by:
        first = next(p for p in ordered if p.policy_id == allowed_by[0])
        return AuthzDecision(
            decision=Decision.ALLOW,
            reason=f"allowed by policy: {first.name}",
            matched_policies=tuple(allowed_by),
            trace=tuple(trace),
        )
    return AuthzDecision(decision=Decision.DENY, reason="default deny", trace=tuple(trace))
