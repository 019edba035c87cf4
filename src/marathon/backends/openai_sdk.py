from __future__ import annotations

import asyncio
import json
from typing import Any

from marathon.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    CapabilityPort,
    decode_json_object,
)


class OpenAIBackend(CapabilityPort):
    """Capability port backed by the OpenAI chat completions API."""

    def __init__(self, *, model: str = "gpt-4.1", client: Any | None = None) -> None:
        self.model = model
        self._client = client

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from openai import OpenAI

            self._client = OpenAI()
        except Exception as exc:
            raise BackendProcessError(
                f"OpenAI client could not be created: {exc}",
                backend="openai",
                retriable=False,
            ) from exc
        return self._client

    def build_request(
        self,
        prompt: str,
        response_schema: dict[str, Any] | None,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if response_schema is not None:
            request["messages"].insert(
                0,
                {
                    "role": "system",
                    "content": (
                        "Reply with one JSON object matching this schema: "
                        + json.dumps(response_schema, ensure_ascii=False)
                    ),
                },
            )
            request["response_format"] = {"type": "json_object"}
        return request

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        if isinstance(payload, dict):
            choices = payload.get("choices") or []
            if choices:
                message = choices[0].get("message") or {}
                return str(message.get("content") or "")
            return ""
        choices = getattr(payload, "choices", None) or []
        if choices:
            message = getattr(choices[0], "message", None)
            return str(getattr(message, "content", "") or "")
        return ""

    async def complete(
        self,
        prompt: str,
        response_schema: dict[str, Any] | None = None,
    ) -> str | dict[str, Any]:
        client = self._ensure_client()
        request = self.build_request(prompt, response_schema)

        def _request() -> Any:
            return client.chat.completions.create(**request)

        try:
            payload = await asyncio.to_thread(_request)
        except Exception as exc:
            raise BackendExecutionError(
                f"OpenAI request failed: {exc}",
                backend="openai",
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if response_schema is None:
            return content
        return decode_json_object(content, backend="openai")
