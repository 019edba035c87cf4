from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TypeVar

from pydantic import ValidationError

from marathon.backends.base import CapabilityPort, MalformedResponseError, decode_json_object
from marathon.errors import CapabilityFailure
from marathon.models import Message
from marathon.schemas import CapabilityModel

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=CapabilityModel)


def compose_prompt(preamble: str, sections: Sequence[tuple[str, str | None]], closing: str) -> str:
    lines = [preamble.strip(), ""]
    for label, value in sections:
        text = "" if value is None else str(value).strip()
        if not text:
            continue
        lines.append(f"{label}:\n{text}" if "\n" in text else f"{label}: {text}")
    lines.extend(["", closing.strip()])
    return "\n".join(lines)


def format_history(messages: Sequence[Message], limit: int) -> str:
    return "\n".join(f"{message.role}: {message.body}" for message in list(messages)[-limit:])


class RoleAgent:
    role: str = "agent"
    preamble: str = "You are a reasoning agent."

    def __init__(self, port: CapabilityPort) -> None:
        self.port = port

    async def request(self, prompt: str, payload_model: type[PayloadT]) -> PayloadT:
        """Run one capability call and validate it into ``payload_model``.

        Every failure mode of the call is reported as ``CapabilityFailure``.
        """
        try:
            raw = await self.port.complete(prompt, payload_model.response_schema())
        except Exception as exc:
            raise CapabilityFailure(
                self.role, str(exc) or type(exc).__name__, original_error=exc
            ) from exc

        if isinstance(raw, str):
            try:
                raw = decode_json_object(raw)
            except MalformedResponseError as exc:
                raise CapabilityFailure(self.role, str(exc), original_error=exc) from exc
        if not isinstance(raw, dict):
            raise CapabilityFailure(
                self.role, f"structured response has type {type(raw).__name__}"
            )

        try:
            payload = payload_model.model_validate(raw)
        except ValidationError as exc:
            raise CapabilityFailure(
                self.role,
                f"schema violation ({exc.error_count()} error(s)): {exc.errors()[0]['msg']}",
                original_error=exc,
            ) from exc
        logger.debug("%s returned %s", self.role, payload_model.__name__)
        return payload
