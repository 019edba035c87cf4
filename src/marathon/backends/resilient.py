from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from marathon.backends.base import BackendExecutionError, BackendTimeoutError, CapabilityPort

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 0
    backoff_seconds: float = 0.5
    timeout_seconds: float = 120.0

    def delay_for(self, retry: int) -> float:
        return self.backoff_seconds * 2 ** (retry - 1)


class ResilientBackend(CapabilityPort):
    """Primary port first, then the fallback; each gets the same retry budget.

    Every failure surfaces as a ``BackendExecutionError``. Non-retriable ones
    skip straight to the next port.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: CapabilityPort,
        fallback_name: str,
        fallback_backend: CapabilityPort,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: str, **fields: Any) -> None:
        if self.event_hook:
            self.event_hook({"event": event, **fields})

    def chain(self) -> list[tuple[str, CapabilityPort]]:
        ports = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            ports.append((self.fallback_name, self.fallback_backend))
        return ports

    async def _call_once(
        self,
        name: str,
        backend: CapabilityPort,
        prompt: str,
        response_schema: dict[str, Any] | None,
    ) -> str | dict[str, Any]:
        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(backend.complete(prompt, response_schema), timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"{name} timed out after {timeout:.1f}s", backend=name
            ) from exc
        except BackendExecutionError:
            raise
        except Exception as exc:
            raise BackendExecutionError(
                f"{name} raised {type(exc).__name__}: {exc}", backend=name
            ) from exc

    async def complete(
        self,
        prompt: str,
        response_schema: dict[str, Any] | None = None,
    ) -> str | dict[str, Any]:
        policy = self.retry_policy
        failures: list[str] = []
        for name, backend in self.chain():
            for attempt in range(policy.max_retries + 1):
                if attempt:
                    delay = policy.delay_for(attempt)
                    self._emit("backend_retry", backend=name, attempt=attempt, delay_seconds=delay)
                    await asyncio.sleep(delay)
                try:
                    result = await self._call_once(name, backend, prompt, response_schema)
                except BackendExecutionError as exc:
                    failures.append(f"{name}[{attempt}]: {exc}")
                    logger.warning("Backend %s attempt %d failed: %s", name, attempt, exc)
                    self._emit(
                        "backend_attempt_failed",
                        backend=name,
                        attempt=attempt,
                        error=str(exc),
                        retriable=exc.retriable,
                    )
                    if not exc.retriable:
                        break
                    continue
                if name != self.primary_name:
                    self._emit("backend_fallback_success", backend=name, attempt=attempt)
                return result

        raise BackendExecutionError(
            "All backend attempts failed. " + "; ".join(failures[-6:]), retriable=False
        )
