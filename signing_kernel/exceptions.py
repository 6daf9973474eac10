"""
Typed Exception Hierarchy for the Signing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every operation of the orchestrator fails with a structured error.  Callers
(transport bindings, the timer service, tests) must be able to branch on the
failure without parsing message strings, so each error carries:

  1. A TYPED exception class (catch by type, not message)
  2. A CODE attribute (specific, machine-readable, API-safe)
  3. A KIND attribute (the stable taxonomy below, one per category)
  4. Structured DATA (ids, statuses, policy ids) as attributes

Example - WRONG way to handle errors:
    try:
        orchestrator.complete_task(task_id, evidence, actor)
    except Exception as e:
        if "mfa" in str(e):  # FRAGILE - message might change
            prompt_for_mfa()

Example - RIGHT way (what this module enables):
    try:
        orchestrator.complete_task(task_id, evidence, actor)
    except MfaRequirementError as e:
        prompt_for_mfa(level=e.required_level)
    except SigningKernelError as e:
        api_response(to_error_payload(e))

===============================================================================
ERROR KINDS
===============================================================================

Kind               | Meaning
-------------------|-------------------------------------------------------
VALIDATION         | Malformed definition, input or expression
NOT_FOUND          | Unknown definition, instance, task or object
STATE              | Operation not allowed in the current state
REQUIREMENT_UNMET  | Evidence does not satisfy task requirements
AUTHZ              | Authorization decision point denied the action
POLICY_FORBIDS     | Workflow settings forbid the operation
DEPENDENCY_FAILED  | An external port failed
TIMEOUT            | An external port exceeded its deadline
CONFLICT           | Concurrent modification detected
INTERNAL           | Invariant breach (audit chain, immutability, bug)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from SigningKernelError:

    SigningKernelError (base)
    |
    +-- ValidationError                      VALIDATION
    |   +-- WorkflowValidationError
    |   +-- ExpressionError
    |   +-- InvalidInputError
    |   +-- ConfigurationError
    |
    +-- NotFoundError                        NOT_FOUND
    |   +-- WorkflowDefinitionNotFoundError
    |   +-- InstanceNotFoundError
    |   +-- TaskNotFoundError
    |   +-- PolicyNotFoundError
    |   +-- ObjectNotFoundError
    |
    +-- StateError                           STATE
    |   +-- InvalidTaskStateError
    |   +-- InstanceNotRunningError
    |   +-- InvalidTransitionError
    |   +-- EvidenceMismatchError
    |
    +-- RequirementUnmetError                REQUIREMENT_UNMET
    |   +-- MissingSignatureError
    |   +-- MissingDecisionError
    |   +-- MfaRequirementError
    |   +-- TimestampRequirementError
    |   +-- CertificateRequirementError
    |
    +-- AuthorizationDeniedError             AUTHZ
    |
    +-- PolicyForbidsError                   POLICY_FORBIDS
    |   +-- DelegationNotAllowedError
    |
    +-- DependencyFailedError                DEPENDENCY_FAILED
    |   +-- PortCallError
    |   +-- ServiceNotRegisteredError
    |   +-- ServiceTaskFailedError
    |
    +-- DeadlineError                        TIMEOUT
    |   +-- PortTimeoutError
    |
    +-- ConflictError                        CONFLICT
    |   +-- ConcurrencyConflictError
    |
    +-- InternalError                        INTERNAL
        +-- InvariantBreachError
        +-- AuditChainBrokenError
        +-- AuditSequenceError
        +-- ImmutabilityViolationError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. COMPLETION IDEMPOTENCY (a retry with identical evidence is success):

    result = orchestrator.complete_task(task_id, evidence, actor)
    # same call again returns the same CompletionResult, no new audit events

2. REJECTED EVIDENCE IS RECOVERABLE:

    except RequirementUnmetError as e:
        # task stays pending, attempts was incremented, retry with new evidence

3. AUDIT CHAIN ERRORS (critical - investigate immediately):

    except AuditChainBrokenError as e:
        alert_security_team(e.chain_key, e.seq)

4. CONFLICTS ARE RETRYABLE:

    except ConcurrencyConflictError:
        retry_operation()

===============================================================================
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Stable error taxonomy exposed to callers."""

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    STATE = "STATE"
    REQUIREMENT_UNMET = "REQUIREMENT_UNMET"
    AUTHZ = "AUTHZ"
    POLICY_FORBIDS = "POLICY_FORBIDS"
    DEPENDENCY_FAILED = "DEPENDENCY_FAILED"
    TIMEOUT = "TIMEOUT"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL"


class SigningKernelError(Exception):
    """
    Base exception for all signing kernel errors.

    All subclasses must have `code` and `kind` class attributes
    for machine-readable error identification.
    """

    code: str = "SIGNING_KERNEL_ERROR"
    kind: ErrorKind = ErrorKind.INTERNAL

    def details(self) -> dict[str, Any]:
        """Structured attributes of this error, for transport bindings."""
        return {
            k: v for k, v in vars(self).items()
            if not k.startswith("_") and k not in ("args", "code", "kind")
        }


def to_error_payload(exc: SigningKernelError) -> dict[str, Any]:
    """Render an error as {kind, code, message, details}."""
    details: dict[str, Any] = {}
    for key, value in exc.details().items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            details[key] = value
        elif isinstance(value, (list, tuple)):
            details[key] = [str(v) if not isinstance(v, (str, int, float, bool, dict)) else v for v in value]
        else:
            details[key] = str(value)
    return {
        "kind": exc.kind.value,
        "code": exc.code,
        "message": str(exc),
        "details": details,
    }


# Validation exceptions


class ValidationError(SigningKernelError):
    """Base exception for malformed input."""

    code: str = "VALIDATION_ERROR"
    kind: ErrorKind = ErrorKind.VALIDATION


class WorkflowValidationError(ValidationError):
    """
    A workflow definition failed structural or expression validation.

    `issues` holds every problem found, not just the first one.
    """

    code: str = "INVALID_WORKFLOW_DEFINITION"

    def __init__(self, workflow_id: str, issues: list):
        self.workflow_id = workflow_id
        self.issues = list(issues)
        summary = "; ".join(str(i) for i in self.issues[:5])
        more = f" (+{len(self.issues) - 5} more)" if len(self.issues) > 5 else ""
        super().__init__(
            f"Workflow definition {workflow_id!r} is invalid: {summary}{more}"
        )


class ExpressionError(ValidationError):
    """A guard, condition or script expression is outside the restricted language."""

    code: str = "INVALID_EXPRESSION"

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid expression {expression!r}: {reason}")


class InvalidInputError(ValidationError):
    """An operation argument is malformed."""

    code: str = "INVALID_INPUT"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class ConfigurationError(ValidationError):
    """A configuration file or value is malformed."""

    code: str = "INVALID_CONFIGURATION"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid configuration in {source}: {reason}")


# Not-found exceptions


class NotFoundError(SigningKernelError):
    """Base exception for unknown identifiers."""

    code: str = "NOT_FOUND"
    kind: ErrorKind = ErrorKind.NOT_FOUND


class WorkflowDefinitionNotFoundError(NotFoundError):
    """No definition (or no such version) is registered."""

    code: str = "WORKFLOW_DEFINITION_NOT_FOUND"

    def __init__(self, workflow_id: str, version: int | None = None):
        self.workflow_id = workflow_id
        self.version = version
        suffix = f" version {version}" if version is not None else ""
        super().__init__(f"Workflow definition not found: {workflow_id}{suffix}")


class InstanceNotFoundError(NotFoundError):
    """Workflow instance with given ID was not found."""

    code: str = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = str(instance_id)
        super().__init__(f"Workflow instance not found: {instance_id}")


class TaskNotFoundError(NotFoundError):
    """Task with given ID was not found."""

    code: str = "TASK_NOT_FOUND"

    def __init__(self, task_id: str):
        self.task_id = str(task_id)
        super().__init__(f"Task not found: {task_id}")


class PolicyNotFoundError(NotFoundError):
    """No ADP policy with the given policy_id."""

    code: str = "POLICY_NOT_FOUND"

    def __init__(self, policy_id: str):
        self.policy_id = policy_id
        super().__init__(f"Policy not found: {policy_id}")


class ObjectNotFoundError(NotFoundError):
    """The object store holds nothing under the given reference."""

    code: str = "OBJECT_NOT_FOUND"

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Stored object not found: {ref}")


# State exceptions


class StateError(SigningKernelError):
    """Base exception for operations not allowed in the current state."""

    code: str = "STATE_ERROR"
    kind: ErrorKind = ErrorKind.STATE


class InvalidTaskStateError(StateError):
    """The task is not in a state that permits the operation."""

    code: str = "INVALID_TASK_STATE"

    def __init__(self, task_id: str, status: str, operation: str):
        self.task_id = str(task_id)
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} task {task_id} in status {status}"
        )


class InstanceNotRunningError(StateError):
    """The workflow instance is not running."""

    code: str = "INSTANCE_NOT_RUNNING"

    def __init__(self, instance_id: str, status: str):
        self.instance_id = str(instance_id)
        self.status = status
        super().__init__(
            f"Workflow instance {instance_id} is not running (status: {status})"
        )


class InvalidTransitionError(StateError):
    """A lifecycle transition is not in the transition table."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity_type: str, from_status: str, to_status: str):
        self.entity_type = entity_type
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid {entity_type} transition: {from_status} -> {to_status}"
        )


class EvidenceMismatchError(StateError):
    """The task was already completed with different evidence."""

    code: str = "TASK_ALREADY_COMPLETED"

    def __init__(self, task_id: str, stored_digest: str, received_digest: str):
        self.task_id = str(task_id)
        self.stored_digest = stored_digest
        self.received_digest = received_digest
        super().__init__(
            f"Task {task_id} already completed with evidence {stored_digest[:12]}, "
            f"received {received_digest[:12]}"
        )


# Requirement exceptions


class RequirementUnmetError(SigningKernelError):
    """Base exception for evidence that does not satisfy task requirements."""

    code: str = "REQUIREMENT_UNMET"
    kind: ErrorKind = ErrorKind.REQUIREMENT_UNMET
    requirement: str = "evidence"

    def __init__(self, task_id: str, reason: str):
        self.task_id = str(task_id)
        self.reason = reason
        super().__init__(
            f"Task {task_id} requirement '{self.requirement}' not met: {reason}"
        )


class MissingSignatureError(RequirementUnmetError):
    """A signature task was completed without a signature."""

    code: str = "SIGNATURE_REQUIRED"
    requirement = "signature"


class MissingDecisionError(RequirementUnmetError):
    """An approval task was completed without an approve/reject decision."""

    code: str = "DECISION_REQUIRED"
    requirement = "decision"


class MfaRequirementError(RequirementUnmetError):
    """MFA assertion missing or below the required level."""

    code: str = "MFA_REQUIRED"
    requirement = "mfa"

    def __init__(self, task_id: str, reason: str, required_level: int = 1):
        self.required_level = required_level
        super().__init__(task_id, reason)


class TimestampRequirementError(RequirementUnmetError):
    """Trusted timestamp token missing or not bound to the evidence."""

    code: str = "TIMESTAMP_REQUIRED"
    requirement = "timestamp"


class CertificateRequirementError(RequirementUnmetError):
    """Certificate chain missing, untrusted or below the required level."""

    code: str = "CERTIFICATE_REQUIRED"
    requirement = "certificate"


# Authorization exceptions


class AuthorizationDeniedError(SigningKernelError):
    """The authorization decision point denied the action."""

    code: str = "AUTHORIZATION_DENIED"
    kind: ErrorKind = ErrorKind.AUTHZ

    def __init__(
        self,
        subject: str,
        action: str,
        resource: str,
        reason: str,
        matched_policies: list[str] | None = None,
    ):
        self.subject = subject
        self.action = action
        self.resource = str(resource)
        self.reason = reason
        self.matched_policies = list(matched_policies or [])
        super().__init__(
            f"{subject} is not allowed to {action} on {resource}: {reason}"
        )


class PolicyForbidsError(SigningKernelError):
    """Base exception for operations forbidden by workflow settings."""

    code: str = "POLICY_FORBIDS"
    kind: ErrorKind = ErrorKind.POLICY_FORBIDS


class DelegationNotAllowedError(PolicyForbidsError):
    """The workflow definition does not allow delegation."""

    code: str = "DELEGATION_NOT_ALLOWED"

    def __init__(self, task_id: str, workflow_id: str):
        self.task_id = str(task_id)
        self.workflow_id = workflow_id
        super().__init__(
            f"Delegation of task {task_id} is not allowed by workflow {workflow_id}"
        )


# Dependency exceptions


class DependencyFailedError(SigningKernelError):
    """Base exception for failures of external ports."""

    code: str = "DEPENDENCY_FAILED"
    kind: ErrorKind = ErrorKind.DEPENDENCY_FAILED


class PortCallError(DependencyFailedError):
    """A port adapter raised an error."""

    code: str = "PORT_CALL_FAILED"

    def __init__(self, port: str, operation: str, reason: str):
        self.port = port
        self.operation = operation
        self.reason = reason
        super().__init__(f"{port}.{operation} failed: {reason}")


class ServiceNotRegisteredError(DependencyFailedError):
    """A service task refers to a service with no registered port."""

    code: str = "SERVICE_NOT_REGISTERED"

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"No service registered under {service!r}")


class ServiceTaskFailedError(DependencyFailedError):
    """A service task exhausted its retries."""

    code: str = "SERVICE_TASK_FAILED"

    def __init__(self, service: str, node_id: str, attempts: int, reason: str):
        self.service = service
        self.node_id = node_id
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Service {service} at node {node_id} failed after "
            f"{attempts} attempt(s): {reason}"
        )


class DeadlineError(SigningKernelError):
    """Base exception for exceeded deadlines."""

    code: str = "TIMEOUT"
    kind: ErrorKind = ErrorKind.TIMEOUT


class PortTimeoutError(DeadlineError):
    """A port call exceeded its deadline."""

    code: str = "PORT_TIMEOUT"

    def __init__(self, port: str, operation: str, timeout_seconds: float):
        self.port = port
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{port}.{operation} did not answer within {timeout_seconds}s"
        )


# Concurrency exceptions


class ConflictError(SigningKernelError):
    """Base exception for concurrent modification."""

    code: str = "CONFLICT"
    kind: ErrorKind = ErrorKind.CONFLICT


class ConcurrencyConflictError(ConflictError):
    """Optimistic version check failed; the caller may retry."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(
            f"{entity_type} {entity_id} was modified concurrently; retry"
        )


# Internal exceptions


class InternalError(SigningKernelError):
    """Base exception for invariant breaches."""

    code: str = "INTERNAL_ERROR"
    kind: ErrorKind = ErrorKind.INTERNAL


class InvariantBreachError(InternalError):
    """An internal invariant does not hold."""

    code: str = "INVARIANT_BREACH"

    def __init__(self, invariant: str, detail: str):
        self.invariant = invariant
        self.detail = detail
        super().__init__(f"Invariant '{invariant}' violated: {detail}")


class AuditChainBrokenError(InternalError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, chain_key: str, seq: int, expected_hash: str, actual_hash: str):
        self.chain_key = chain_key
        self.seq = seq
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain {chain_key} broken at seq {seq}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


class AuditSequenceError(InternalError):
    """An audit event was appended out of order."""

    code: str = "AUDIT_SEQUENCE_VIOLATION"

    def __init__(self, chain_key: str, expected_seq: int, actual_seq: int):
        self.chain_key = chain_key
        self.expected_seq = expected_seq
        self.actual_seq = actual_seq
        super().__init__(
            f"Audit chain {chain_key} expected seq {expected_seq}, got {actual_seq}"
        )


class ImmutabilityViolationError(InternalError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
