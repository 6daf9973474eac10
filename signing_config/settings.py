"""
Configuration schema (``signing_config.settings``).

Responsibility
--------------
Frozen dataclasses for the orchestrator's runtime settings and for a
policy pack (role permission map, policies, seed relationships and role
assignments).

Architecture position
---------------------
**Config layer** -- pure schema.  Parsed by ``signing_config.loader``;
consumed by ``signing_services`` and ``signing_timers`` at wiring time.

Invariants enforced
-------------------
* ``authz_cache_ttl_seconds`` never exceeds ``MAX_AUTHZ_CACHE_TTL_SECONDS``.
* ``policy_allowed_sample_rate`` is within [0, 1].
"""

from __future__ import annotations

from dataclasses import dataclass, field

from signing_kernel.domain.authz import Policy, RelationshipTriple

MAX_AUTHZ_CACHE_TTL_SECONDS = 300


@dataclass(frozen=True)
class OrchestratorSettings:
    """Runtime settings.  Durations are in seconds."""

    database_url: str = "sqlite:///:memory:"
    authz_cache_ttl_seconds: float = 300.0
    authz_cache_max_entries: int = 10_000
    policy_allowed_sample_rate: float = 0.1
    port_timeout_seconds: float = 10.0
    service_retry_base_delay_seconds: float = 0.5
    service_retry_max_delay_seconds: float = 30.0
    service_retry_total_delay_seconds: float = 10.0
    reminder_interval_seconds: int = 24 * 3600
    escalation_delay_seconds: int = 72 * 3600
    reminder_tick_seconds: float = 60.0
    notification_channel: str = "email"
    escalation_recipient: str = "escalations"
    trusted_issuers: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.authz_cache_ttl_seconds > MAX_AUTHZ_CACHE_TTL_SECONDS:
            object.__setattr__(self, "authz_cache_ttl_seconds", float(MAX_AUTHZ_CACHE_TTL_SECONDS))
        if self.authz_cache_ttl_seconds < 0:
            raise ValueError("authz_cache_ttl_seconds must be >= 0")
        if not 0.0 <= self.policy_allowed_sample_rate <= 1.0:
            raise ValueError("policy_allowed_sample_rate must be within [0, 1]")
        if self.authz_cache_max_entries < 1:
            raise ValueError("authz_cache_max_entries must be >= 1")
        if self.service_retry_total_delay_seconds < 0:
            raise ValueError("service_retry_total_delay_seconds must be >= 0")
        if self.port_timeout_seconds <= 0:
            raise ValueError("port_timeout_seconds must be positive")

    @property
    def allowed_sample_every(self) -> int:
        """Audit every Nth allow decision (0 disables allow sampling)."""
        if self.policy_allowed_sample_rate <= 0:
            return 0
        return max(1, round(1 / self.policy_allowed_sample_rate))


@dataclass(frozen=True)
class PolicyPack:
    """A deployable set of authorization facts."""

    name: str
    role_permissions: dict[str, tuple[str, ...]] = field(default_factory=dict)
    policies: tuple[Policy, ...] = ()
    relationships: tuple[RelationshipTriple, ...] = ()
    role_assignments: tuple[tuple[str, str], ...] = ()
    checksum: str = ""
