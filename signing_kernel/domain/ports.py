"""
Ports -- Interfaces to external collaborators.

Responsibility:
    Declares the structural interfaces the orchestrator depends on for
    everything outside its core: blob storage, trusted timestamping,
    notification delivery, certificate services and service-task targets.

Architecture position:
    Kernel > Domain -- pure interface declarations, zero I/O.  Reference
    adapters live in ``signing_services.adapters``; every call through a
    port is made with a deadline by ``signing_services.port_gateway``.

Failure modes:
    - Adapters may raise any exception; the gateway maps it to
      PortCallError (DEPENDENCY_FAILED) or PortTimeoutError (TIMEOUT).
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from signing_kernel.domain.task import TimestampToken


@runtime_checkable
class ObjectStore(Protocol):
    """Blob storage for documents and signature bytes."""

    def put(self, key: str, data: bytes) -> str:
        """Store bytes under key; return the object's URI."""
        ...

    def get(self, key: str) -> bytes:
        ...

    def delete(self, key: str) -> None:
        ...


@runtime_checkable
class TimestampAuthority(Protocol):
    """RFC 3161-style trusted timestamping."""

    def stamp(self, digest: str) -> TimestampToken:
        ...

    def verify(self, token: TimestampToken, digest: str) -> bool:
        ...


@runtime_checkable
class Notifier(Protocol):
    """Delivery of reminders, escalations and notification nodes."""

    def send(
        self,
        channel: str,
        template_id: str,
        recipient: str,
        variables: dict[str, Any],
    ) -> str:
        """Return a delivery id."""
        ...


@runtime_checkable
class PkiService(Protocol):
    """Certificate issuance and lifecycle."""

    def issue(self, csr: str, profile: str) -> dict[str, Any]:
        ...

    def status(self, request_id: str) -> str:
        ...

    def revoke(self, serial: str, reason: str) -> None:
        ...


@runtime_checkable
class ServicePort(Protocol):
    """Target of a service_task node.

    ``invoke`` must be idempotent: the engine retries it with backoff.
    """

    def invoke(self, payload: dict[str, Any]) -> dict[str, Any]:
        ...
