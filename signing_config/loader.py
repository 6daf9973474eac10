"""
Configuration Loader (``signing_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into typed objects: orchestrator
settings (with ``SIGNING_*`` environment overrides), policy packs and
workflow definitions.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Depends on kernel domain
types only; no services, no database.

Invariants enforced
-------------------
* All parse errors raise ``ConfigurationError`` with the source file and
  a descriptive reason; no silent defaults for required fields.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML or missing keys  -> ``ConfigurationError``.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from signing_config.settings import OrchestratorSettings, PolicyPack
from signing_kernel.domain.authz import Policy, RelationshipTriple
from signing_kernel.domain.workflow import WorkflowDefinition
from signing_kernel.exceptions import ConfigurationError

DEFAULTS_DIR = Path(__file__).parent / "defaults"
ENV_PREFIX = "SIGNING_"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        ConfigurationError: if the file is not valid YAML or not a mapping.
    """
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(str(path), f"invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def compute_checksum(data: Any) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


# =========================================================================
# Settings
# =========================================================================


def _coerce(field: dataclasses.Field, raw: Any, source: str) -> Any:
    default = field.default
    try:
        if isinstance(default, bool):
            if isinstance(raw, str):
                return raw.strip().lower() in ("1", "true", "yes", "on")
            return bool(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, tuple):
            if isinstance(raw, str):
                return tuple(item.strip() for item in raw.split(",") if item.strip())
            return tuple(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(source, f"{field.name}: {exc}") from exc
    return str(raw)


def parse_settings(data: Mapping[str, Any], source: str = "<settings>") -> OrchestratorSettings:
    fields = {f.name: f for f in dataclasses.fields(OrchestratorSettings)}
    unknown = sorted(set(data) - set(fields))
    if unknown:
        raise ConfigurationError(source, f"unknown settings: {', '.join(unknown)}")
    values = {name: _coerce(fields[name], raw, source) for name, raw in data.items()}
    try:
        return OrchestratorSettings(**values)
    except ValueError as exc:
        raise ConfigurationError(source, str(exc)) from exc


def load_settings(
    path: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> OrchestratorSettings:
    """
    Settings from a YAML file (default: the shipped settings.yaml) with
    ``SIGNING_<FIELD>`` environment variables taking precedence.
    """
    path = Path(path) if path is not None else DEFAULTS_DIR / "settings.yaml"
    env = os.environ if env is None else env
    data = load_yaml_file(path)
    section = data.get("orchestrator", data)
    merged = dict(section)
    for f in dataclasses.fields(OrchestratorSettings):
        key = ENV_PREFIX + f.name.upper()
        if key in env:
            merged[f.name] = env[key]
    return parse_settings(merged, str(path))


# =========================================================================
# Policy packs
# =========================================================================


def parse_policy_pack(data: Mapping[str, Any], source: str = "<policy pack>") -> PolicyPack:
    try:
        role_permissions = {
            str(role): tuple(str(p) for p in perms or ())
            for role, perms in (data.get("role_permissions") or {}).items()
        }
        policies = tuple(Policy.from_dict(p) for p in data.get("policies") or ())
        relationships = tuple(
            RelationshipTriple(
                subject=str(r["subject"]),
                relation=str(r["relation"]),
                object=str(r["object"]),
                object_type=str(r["object_type"]),
            )
            for r in data.get("relationships") or ()
        )
        role_assignments = tuple(
            (str(a["subject"]), str(a["role"])) for a in data.get("role_assignments") or ()
        )
    except (KeyError, ValueError, TypeError) as exc:
        raise ConfigurationError(source, f"policy pack: {exc}") from exc

    ids = [p.policy_id for p in policies]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ConfigurationError(source, f"duplicate policy ids: {', '.join(duplicates)}")

    return PolicyPack(
        name=str(data.get("name") or Path(source).stem),
        role_permissions=role_permissions,
        policies=policies,
        relationships=relationships,
        role_assignments=role_assignments,
        checksum=compute_checksum(dict(data)),
    )


def load_policy_pack(*paths: Path | str) -> PolicyPack:
    """
    Merge one or more policy pack files (later files extend earlier ones).

    Without arguments loads the shipped role_permissions.yaml and policies.yaml.
    """
    if not paths:
        paths = (DEFAULTS_DIR / "role_permissions.yaml", DEFAULTS_DIR / "policies.yaml")
    merged: dict[str, Any] = {
        "role_permissions": {},
        "policies": [],
        "relationships": [],
        "role_assignments": [],
    }
    names: list[str] = []
    for path in paths:
        data = load_yaml_file(Path(path))
        names.append(str(data.get("name") or Path(path).stem))
        merged["role_permissions"].update(data.get("role_permissions") or {})
        for key in ("policies", "relationships", "role_assignments"):
            merged[key].extend(data.get(key) or ())
    merged["name"] = "+".join(names)
    return parse_policy_pack(merged, ",".join(str(p) for p in paths))


# =========================================================================
# Workflow definitions
# =========================================================================


def parse_workflow_definition(data: Mapping[str, Any], source: str = "<definition>") -> WorkflowDefinition:
    try:
        return WorkflowDefinition.from_dict(dict(data))
    except (KeyError, ValueError, TypeError) as exc:
        raise ConfigurationError(source, f"workflow definition: {exc}") from exc


def load_workflow_definition(path: Path | str) -> WorkflowDefinition:
    path = Path(path)
    data = load_yaml_file(path)
    return parse_workflow_definition(data.get("workflow", data), str(path))


def shipped_workflow(name: str) -> WorkflowDefinition:
    """One of the example workflows under defaults/workflows/."""
    return load_workflow_definition(DEFAULTS_DIR / "workflows" / f"{name}.yaml")
