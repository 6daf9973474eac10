"""
signing_services.port_gateway -- Deadlines for every external port call.

Responsibility:
    Runs calls to the object store, timestamp authority, notifier, PKI and
    service-task targets on a worker pool and waits for them with a
    deadline, translating adapter failures into the error taxonomy.

Architecture position:
    Services layer.  Used by the orchestrator, the workflow engine, the
    service-task runner and the timer service; adapters never see it.

Invariants enforced:
    - No port call blocks the caller longer than its deadline.
    - Typed kernel errors raised by an adapter (e.g. ObjectNotFoundError)
      propagate unchanged; any other exception becomes PortCallError.

Failure modes:
    - PortTimeoutError (TIMEOUT) when the deadline elapses.  The worker
      thread is abandoned, not killed; adapters must tolerate that.
    - PortCallError (DEPENDENCY_FAILED) when the adapter raises.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, TypeVar

from signing_kernel.exceptions import PortCallError, PortTimeoutError, SigningKernelError
from signing_kernel.logging_config import get_logger

logger = get_logger("services.port_gateway")

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 10.0


class PortGateway:
    """
    Deadline-enforcing call wrapper.

    Contract:
        ``call(port, operation, fn, *args, **kwargs)`` returns ``fn``'s
        result or raises PortTimeoutError / PortCallError.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS, max_workers: int = 8):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = float(timeout_seconds)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="port-call")

    def call(
        self,
        port: str,
        operation: str,
        fn: Callable[..., T],
        *args: Any,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> T:
        deadline = float(timeout) if timeout is not None else self.timeout_seconds
        started = time.perf_counter()
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            result = future.result(timeout=deadline)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                "port_call_timeout",
                extra={"port": port, "operation": operation, "timeout_seconds": deadline},
            )
            raise PortTimeoutError(port, operation, deadline) from None
        except SigningKernelError:
            raise
        except Exception as exc:
            logger.warning(
                "port_call_failed",
                extra={"port": port, "operation": operation, "error": str(exc)},
                exc_info=True,
            )
            raise PortCallError(port, operation, str(exc)) from exc

        logger.debug(
            "port_call_succeeded",
            extra={
                "port": port,
                "operation": operation,
                "duration_ms": round((time.perf_counter() - started) * 1000, 3),
            },
        )
        return result

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)
