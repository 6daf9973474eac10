"""
signing_services -- Package init and public API.

Responsibility:
    Coordinators that compose the pure engines with database sessions and
    external ports: the workflow engine, the orchestrator facade, the
    port gateway, service-task execution, per-instance locks and the
    live event stream.  This is the layer that owns transactions.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        signing_services/ -> signing_engines/  (allowed)
        signing_services/ -> signing_kernel/   (allowed)
        signing_services/ -> signing_config/   (allowed)
        signing_engines/  -> signing_services/ (FORBIDDEN)
        signing_kernel/   -> signing_services/ (FORBIDDEN)

Invariants enforced:
    - DI transparency: per-transaction kernel service wiring is
      centralised in SigningOrchestrator.

Audit relevance:
    - This package is the canonical import surface for callers.
"""

from signing_kernel.logging_config import get_logger

logger = get_logger("services")

from signing_services.adapters import (  # noqa: E402
    FileSystemObjectStore,
    HmacTimestampAuthority,
    InMemoryObjectStore,
    InMemoryPki,
    RecordingNotifier,
)
from signing_services.event_stream import EventBroker, InstanceSubscription  # noqa: E402
from signing_services.instance_lock import InstanceLockRegistry  # noqa: E402
from signing_services.orchestrator import (  # noqa: E402
    Ports,
    SigningOrchestrator,
    UnitOfWork,
    build_orchestrator,
)
from signing_services.port_gateway import PortGateway  # noqa: E402
from signing_services.service_tasks import ServiceRegistry, ServiceTaskRunner  # noqa: E402
from signing_services.workflow_engine import WorkflowEngine  # noqa: E402

__all__ = [
    "EventBroker",
    "FileSystemObjectStore",
    "HmacTimestampAuthority",
    "InMemoryObjectStore",
    "InMemoryPki",
    "InstanceLockRegistry",
    "InstanceSubscription",
    "PortGateway",
    "Ports",
    "RecordingNotifier",
    "ServiceRegistry",
    "ServiceTaskRunner",
    "SigningOrchestrator",
    "UnitOfWork",
    "WorkflowEngine",
    "build_orchestrator",
]
