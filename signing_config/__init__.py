"""
signing_config -- configuration entrypoint for the orchestrator.

Responsibility:
    Provides ``get_settings()`` and ``get_policy_pack()``, the runtime
    entrypoints for orchestrator settings and the authorization policy
    pack.  YAML parsing lives in ``signing_config.loader``.

Architecture position:
    Configuration -- sits above ``signing_kernel`` and below
    ``signing_services`` / ``signing_timers``.  The kernel MUST NEVER
    import from ``signing_config``.

Failure modes:
    - ``FileNotFoundError`` -- configuration file missing.
    - ``ConfigurationError`` -- malformed YAML or invalid values.

Audit relevance:
    Every load emits a ``CONFIG_TRACE`` log entry with the source and
    checksum, tying decisions back to the configuration that governed them.
"""

from __future__ import annotations

import logging
from pathlib import Path

from signing_config.loader import (
    compute_checksum,
    load_policy_pack,
    load_settings,
    load_workflow_definition,
    shipped_workflow,
)
from signing_config.settings import OrchestratorSettings, PolicyPack

_logger = logging.getLogger("signing_kernel.config")


def get_settings(path: Path | str | None = None) -> OrchestratorSettings:
    """Settings from ``path`` (or the shipped defaults) plus environment overrides."""
    settings = load_settings(path)
    _logger.info(
        "CONFIG_TRACE",
        extra={
            "trace_type": "CONFIG_TRACE",
            "source": str(path or "defaults/settings.yaml"),
            "checksum": compute_checksum(settings.__dict__),
        },
    )
    return settings


def get_policy_pack(*paths: Path | str) -> PolicyPack:
    """Policy pack from ``paths`` (or the shipped defaults)."""
    pack = load_policy_pack(*paths)
    _logger.info(
        "CONFIG_TRACE",
        extra={
            "trace_type": "CONFIG_TRACE",
            "source": pack.name,
            "checksum": pack.checksum,
            "policy_count": len(pack.policies),
            "role_count": len(pack.role_permissions),
        },
    )
    return pack


__all__ = [
    "OrchestratorSettings",
    "PolicyPack",
    "compute_checksum",
    "get_policy_pack",
    "get_settings",
    "load_policy_pack",
    "load_settings",
    "load_workflow_definition",
    "shipped_workflow",
]
