from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from marathon.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    CapabilityPort,
    decode_json_object,
    schema_instruction,
)


class ClaudeCodeBackend(CapabilityPort):
    """Runs ``claude -p`` once per prompt and reads its JSON result envelope.

    The prompt is written to stdin so long phase histories never hit argv limits.
    """

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        model: str | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model

    def build_command(self) -> list[str]:
        command = [self.binary, "-p", "--output-format", "json"]
        if self.model:
            command += ["--model", self.model]
        return command

    @staticmethod
    def result_text(stdout: str) -> str:
        """Pull the assistant text out of the CLI's result envelope.

        Older CLI builds print a list of events instead of a single object;
        the last ``result`` event wins. Anything that is not JSON is
        treated as the reply itself.
        """
        stripped = stdout.strip()
        try:
            envelope = json.loads(stripped)
        except json.JSONDecodeError:
            return stripped
        if isinstance(envelope, list):
            results = [
                item for item in envelope if isinstance(item, dict) and item.get("type") == "result"
            ]
            envelope = results[-1] if results else {}
        if not isinstance(envelope, dict):
            return stripped
        if envelope.get("is_error"):
            raise BackendExecutionError(
                f"Claude reported an error: {envelope.get('result') or envelope.get('subtype')}",
                backend="claude",
                retriable=True,
            )
        result = envelope.get("result")
        return result.strip() if isinstance(result, str) else ""

    async def _run(self, prompt: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(),
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}", backend="claude", retriable=False
            ) from exc

        try:
            stdout, stderr = await process.communicate(prompt.encode("utf-8"))
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise BackendExecutionError(
                f"claude exited with {process.returncode}: {detail}",
                backend="claude",
                exit_code=process.returncode,
                retriable=True,
            )
        return self.result_text(stdout.decode("utf-8", errors="replace"))

    async def complete(
        self,
        prompt: str,
        response_schema: dict[str, Any] | None = None,
    ) -> str | dict[str, Any]:
        if response_schema is None:
            return await self._run(prompt)
        reply = await self._run(f"{prompt}\n\n{schema_instruction(response_schema)}")
        return decode_json_object(reply, backend="claude")
