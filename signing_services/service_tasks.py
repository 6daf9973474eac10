"""
signing_services.service_tasks -- Synchronous service_task execution.

Responsibility:
    Resolves the service named by a ``service_task`` node, builds its
    payload from workflow variables, and invokes it through the port
    gateway with exponential backoff.  Also runs compensation handlers.

Architecture position:
    Services layer.  Called by the workflow engine inside the instance
    transaction; sleeping between retries holds the instance lock.

Invariants enforced:
    - Retries are confined to service ports, which must be idempotent.
    - Backoff before retry ``n`` (0-based) is ``min(max_delay, base * 2**n)``.
    - At most ``retry_attempts + 1`` invocations per node entry, where
      ``retry_attempts`` comes from the node config or the definition
      default.
    - Total backoff slept per node entry never exceeds ``max_total_delay``
      (``service_retry_total_delay_seconds``); once it is spent the node
      fails instead of sleeping again with the lock held.

Failure modes:
    - ServiceTaskFailedError once retries are exhausted, or immediately
      when no service is registered under the node's name.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from signing_engines.expressions import evaluate
from signing_kernel.domain.ports import ServicePort
from signing_kernel.domain.workflow import Node, WorkflowDefinition
from signing_kernel.exceptions import (
    DeadlineError,
    DependencyFailedError,
    ServiceNotRegisteredError,
    ServiceTaskFailedError,
)
from signing_kernel.logging_config import get_logger
from signing_services.port_gateway import PortGateway

logger = get_logger("services.service_tasks")

RetryCallback = Callable[[int, float, Exception], None]


class FunctionService:
    """Adapts a plain callable to the ServicePort protocol."""

    def __init__(self, fn: Callable[[dict[str, Any]], dict[str, Any] | None]):
        self._fn = fn

    def invoke(self, payload: dict[str, Any]) -> dict[str, Any]:
        return dict(self._fn(payload) or {})


class ServiceRegistry:
    """Named service ports available to service_task nodes."""

    def __init__(self) -> None:
        self._services: dict[str, ServicePort] = {}
        self._lock = threading.Lock()

    def register(self, name: str, service: ServicePort | Callable[[dict[str, Any]], Any]) -> None:
        if not isinstance(service, ServicePort):
            service = FunctionService(service)
        with self._lock:
            self._services[name] = service
        logger.info("service_registered", extra={"service": name})

    def get(self, name: str) -> ServicePort:
        with self._lock:
            service = self._services.get(name)
        if service is None:
            raise ServiceNotRegisteredError(name)
        return service

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._services)


@dataclass(frozen=True)
class RetryPolicy:
    retry_attempts: int
    base_delay: float
    max_delay: float
    max_total_delay: float | None = None

    def delay(self, retry: int) -> float:
        return min(self.max_delay, self.base_delay * 2 ** retry)


@dataclass(frozen=True)
class ServiceOutcome:
    output: dict[str, Any]
    attempts: int


def build_payload(spec: Mapping[str, Any] | None, variables: Mapping[str, Any]) -> dict[str, Any]:
    """String values are expressions over ``variables``; others are literals.

    Text literals are written quoted, e.g. ``"'rollback'"``; a bare word is a
    variable reference and is rejected at registration when unknown.
    """
    payload: dict[str, Any] = {}
    for name, source in (spec or {}).items():
        payload[str(name)] = evaluate(source, variables) if isinstance(source, str) else source
    return payload


class ServiceTaskRunner:
    """
    Invokes service ports with retries.

    Contract:
        ``run(node, definition, variables)`` returns the service output
        or raises ServiceTaskFailedError.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        gateway: PortGateway,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        max_total_delay: float | None = None,
    ):
        self._registry = registry
        self._gateway = gateway
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_total_delay = max_total_delay
        self._sleep = sleep

    def retry_policy(self, node: Node, definition: WorkflowDefinition) -> RetryPolicy:
        attempts = node.config.get("retry_attempts", definition.settings.default_retry_attempts)
        return RetryPolicy(int(attempts), self._base_delay, self._max_delay, self._max_total_delay)

    def run(
        self,
        node: Node,
        definition: WorkflowDefinition,
        variables: Mapping[str, Any],
        on_retry: RetryCallback | None = None,
    ) -> ServiceOutcome:
        name = str(node.config["service"])
        payload = build_payload(node.config.get("input"), variables)
        return self._invoke(name, node.id, payload, self.retry_policy(node, definition), on_retry)

    def compensate(self, node: Node, variables: Mapping[str, Any]) -> ServiceOutcome:
        """Run the node's ``compensation`` handler ({service, input, retry_attempts})."""
        spec = node.config["compensation"]
        policy = RetryPolicy(
            int(spec.get("retry_attempts", 0)), self._base_delay, self._max_delay, self._max_total_delay
        )
        payload = build_payload(spec.get("input"), variables)
        return self._invoke(str(spec["service"]), node.id, payload, policy, None)

    def _invoke(
        self,
        name: str,
        node_id: str,
        payload: dict[str, Any],
        policy: RetryPolicy,
        on_retry: RetryCallback | None,
    ) -> ServiceOutcome:
        try:
            service = self._registry.get(name)
        except ServiceNotRegisteredError as exc:
            raise ServiceTaskFailedError(name, node_id, 0, str(exc)) from exc

        last_error: Exception | None = None
        attempts = 0
        slept = 0.0
        for retry in range(policy.retry_attempts + 1):
            attempts = retry + 1
            try:
                output = self._gateway.call(f"service:{name}", "invoke", service.invoke, payload)
            except (DependencyFailedError, DeadlineError) as exc:
                last_error = exc
                if retry >= policy.retry_attempts:
                    break
                delay = policy.delay(retry)
                if policy.max_total_delay is not None:
                    remaining = policy.max_total_delay - slept
                    if delay > 0 and remaining <= 0:
                        logger.warning(
                            "service_task_backoff_exhausted",
                            extra={"service": name, "node_id": node_id, "attempts": attempts,
                                   "slept_seconds": round(slept, 3)},
                        )
                        break
                    delay = min(delay, remaining)
                logger.warning(
                    "service_task_retry",
                    extra={"service": name, "node_id": node_id, "retry": retry + 1, "delay_seconds": delay},
                )
                if on_retry is not None:
                    on_retry(retry + 1, delay, exc)
                self._sleep(delay)
                slept += delay
                continue
            logger.info(
                "service_task_succeeded",
                extra={"service": name, "node_id": node_id, "attempts": retry + 1},
            )
            return ServiceOutcome(output=dict(output or {}), attempts=retry + 1)

        raise ServiceTaskFailedError(name, node_id, attempts, str(last_error))
