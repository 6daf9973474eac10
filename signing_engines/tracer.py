"""
signing_engines.tracer -- ENGINE_TRACE records for pure engine calls.

Responsibility:
    ``@traced_engine`` wraps an engine function and logs one ENGINE_TRACE
    record per call: engine name and version, a fingerprint of the
    selected arguments, the outcome and the duration.  Replaying an
    authorization decision or a graph analysis with the same inputs gives
    the same fingerprint, which is what makes the traces comparable.

Architecture position:
    Engines -- support for the pure calculation layer.  Emits a log
    record and nothing else; the logger lives under ``signing_kernel`` so
    the kernel's structured formatter picks it up.

Invariants enforced:
    - Fingerprints are deterministic: mappings and sets are ordered,
      bytes are reduced to their SHA-256, value objects contribute their
      ``to_dict()`` or their dataclass fields.  The digest is SHA-256
      truncated to 16 hex chars.
    - Positional and keyword arguments are bound to parameter names
      before fingerprinting, so call style does not change the trace.
    - The wrapped function's result and exceptions pass through untouched.
"""

from __future__ import annotations

import dataclasses
import functools
import hashlib
import inspect
import logging
import time
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

_logger = logging.getLogger("signing_kernel.engines.tracer")

FINGERPRINT_LENGTH = 16


def _canonicalize(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (int, float, str)):
        return str(value)
    if isinstance(value, bytes):
        return "sha256:" + hashlib.sha256(value).hexdigest()
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{k}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (set, frozenset)):
        return "[" + ",".join(sorted(_canonicalize(v) for v in value)) + "]"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(v) for v in value) + "]"
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _canonicalize(to_dict())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _canonicalize({f.name: getattr(value, f.name) for f in dataclasses.fields(value)})
    return str(value)


def compute_input_fingerprint(fields: tuple[str, ...], arguments: Mapping[str, Any]) -> str:
    """SHA-256 prefix over ``field=value`` pairs; absent fields count as null."""
    canonical = "|".join(f"{field}={_canonicalize(arguments.get(field))}" for field in fields)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorator emitting ENGINE_TRACE around an engine function.

    Args:
        engine_name: Engine identifier, e.g. "authorization".
        engine_version: Bumped when the engine's semantics change.
        fingerprint_fields: Parameter names fingerprinted on each call.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = ""
            if fingerprint_fields:
                bound = signature.bind_partial(*args, **kwargs)
                fingerprint = compute_input_fingerprint(fingerprint_fields, bound.arguments)

            started = time.monotonic()
            outcome = "ok"
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                outcome = type(exc).__name__
                raise
            finally:
                _logger.debug(
                    "ENGINE_TRACE",
                    extra={
                        "trace_type": "ENGINE_TRACE",
                        "engine_name": engine_name,
                        "engine_version": engine_version,
                        "input_fingerprint": fingerprint,
                        "outcome": outcome,
                        "duration_ms": round((time.monotonic() - started) * 1000, 2),
                        "function": func.__qualname__,
                    },
                )

        return wrapper

    return decorator
