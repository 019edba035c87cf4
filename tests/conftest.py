from __future__ import annotations

import copy
from collections.abc import Callable
from typing import Any

import pytest

from marathon.backends.base import BackendExecutionError, CapabilityPort
from marathon.config import PipelineConfig

ROLE_MARKERS = (
    ("has asked you a question", "answer"),
    ("revising your phase output", "revision"),
    ("Code Review Agent monitoring", "review"),
    ("Audit gate", "audit"),
    ("concise task summary", "summary"),
    ("Worker Agent executing", "worker"),
)


def classify(prompt: str) -> str:
    first_line = prompt.splitlines()[0] if prompt else ""
    for marker, role in ROLE_MARKERS:
        if marker in first_line:
            return role
    return "unknown"


class ScriptedPort(CapabilityPort):
    """Replies by role; each role's script is consumed in order, the last entry repeats."""

    def __init__(
        self,
        *,
        worker: list[dict[str, Any]] | None = None,
        review: list[dict[str, Any]] | None = None,
        answer: list[dict[str, Any]] | None = None,
        revision: list[dict[str, Any]] | None = None,
        audit: list[dict[str, Any]] | None = None,
        summary: list[dict[str, Any]] | None = None,
        failures: set[str] | None = None,
    ) -> None:
        self.scripts: dict[str, list[dict[str, Any]]] = {
            "worker": worker or [{"text": "Phase output", "thoughtTrace": "Reasoning trace"}],
            "review": review or [{"text": "Looks solid.", "suggestions": []}],
            "answer": answer or [{"text": "Answered."}],
            "revision": revision
            or [
                {
                    "revisedOutput": "Revised output",
                    "revisedThoughtTrace": "Revised trace",
                    "changes": "Applied review suggestions",
                }
            ],
            "audit": audit or [{"verdict": "VERIFIED", "score": 90, "analysis": "checked"}],
            "summary": summary or [{"summary": "Task is progressing."}],
        }
        self.failures = set(failures or ())
        self.hooks: dict[str, Callable[[], None]] = {}
        self.calls: list[str] = []
        self.prompts: list[tuple[str, str]] = []
        self._cursor: dict[str, int] = {}

    def prompts_for(self, role: str) -> list[str]:
        return [prompt for kind, prompt in self.prompts if kind == role]

    async def complete(
        self,
        prompt: str,
        response_schema: dict[str, Any] | None = None,
    ) -> str | dict[str, Any]:
        _ = response_schema
        role = classify(prompt)
        self.calls.append(role)
        self.prompts.append((role, prompt))
        hook = self.hooks.get(role)
        if hook is not None:
            hook()
        if role in self.failures:
            raise BackendExecutionError(f"scripted {role} failure", backend="fake")
        script = self.scripts.get(role)
        if not script:
            raise BackendExecutionError(f"no script for {role}", backend="fake")
        index = self._cursor.get(role, 0)
        self._cursor[role] = index + 1
        return copy.deepcopy(script[min(index, len(script) - 1)])


@pytest.fixture
def scripted_port() -> type[ScriptedPort]:
    return ScriptedPort


@pytest.fixture
def fast_pipeline() -> Callable[..., PipelineConfig]:
    def _build(**overrides: Any) -> PipelineConfig:
        settings: dict[str, Any] = {
            "phases": ["Analysis", "Planning"],
            "step_delay_seconds": 0.0,
            "retry_delay_seconds": 0.0,
        }
        settings.update(overrides)
        return PipelineConfig(**settings)

    return _build
