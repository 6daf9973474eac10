"""
Module: signing_engines
Responsibility:
    Package entrypoint for the pure engines: the restricted condition
    language, workflow graph validation and analysis, ADP policy
    evaluation, evidence requirement checks and offline audit chain
    verification.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import signing_kernel/domain, signing_kernel/utils,
    signing_kernel/exceptions (and sibling engine modules).
    MUST NOT import signing_services, signing_timers or kernel services.

Invariants enforced:
    - Purity: engines never read the clock.  Timestamps are passed in.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Engine invocations are traced via the ``@traced_engine`` decorator
    (see ``signing_engines.tracer``).

Usage:
    from signing_engines.graph import assert_valid, compute_dependencies
    from signing_engines.expressions import evaluate, evaluate_guard
    from signing_engines.authorization import evaluate_policies
    from signing_engines.requirements import evaluate_requirements
    from signing_engines.audit_chain import verify_chain
"""

from signing_engines.audit_chain import ChainBreak, find_chain_break, verify_chain
from signing_engines.authorization import (
    build_attribute_map,
    combine_conditions,
    environment_attributes,
    evaluate_condition,
    evaluate_policies,
)
from signing_engines.expressions import (
    evaluate,
    evaluate_guard,
    parse_expression,
    type_check,
)
from signing_engines.graph import (
    ValidationIssue,
    assert_valid,
    compute_dependencies,
    pair_splits,
    predict_duration,
    region_nodes,
    validate_definition,
)
from signing_engines.requirements import UnmetRequirement, evaluate_requirements
from signing_engines.tracer import traced_engine

__all__ = [
    "ChainBreak",
    "UnmetRequirement",
    "ValidationIssue",
    "assert_valid",
    "build_attribute_map",
    "combine_conditions",
    "compute_dependencies",
    "environment_attributes",
    "evaluate",
    "evaluate_condition",
    "evaluate_guard",
    "evaluate_policies",
    "evaluate_requirements",
    "find_chain_break",
    "pair_splits",
    "parse_expression",
    "predict_duration",
    "region_nodes",
    "traced_engine",
    "type_check",
    "validate_definition",
    "verify_chain",
]
