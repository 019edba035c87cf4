from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import Any

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


class BackendExecutionError(RuntimeError):
    """Raised when a capability backend call fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a backend call exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when a backend process or client cannot be started."""


class MalformedResponseError(BackendExecutionError):
    """Raised when a structured response cannot be decoded."""


class CapabilityPort(ABC):
    """One-shot request/response boundary to a generative-reasoning service."""

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        response_schema: dict[str, Any] | None = None,
    ) -> str | dict[str, Any]:
        """Return freeform text, or a decoded object when a schema is given."""


def schema_instruction(response_schema: dict[str, Any]) -> str:
    return (
        "Respond with a single JSON object only, matching this JSON schema:\n"
        f"{json.dumps(response_schema, ensure_ascii=False)}"
    )


def decode_json_object(raw_text: str, *, backend: str | None = None) -> dict[str, Any]:
    text = raw_text.strip()
    candidates = [text]
    candidates.extend(match.group(1) for match in FENCED_JSON_PATTERN.finditer(text))
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise MalformedResponseError(
        f"Structured response is not a JSON object: {text[:200]!r}",
        backend=backend,
        retriable=True,
    )
