"""Session export and offline replay of the message graph."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from marathon.errors import InvalidInput
from marathon.graph import MessageGraph
from marathon.models import Message, Task, TaskMemory, utcnow

SCHEMA_VERSION = 1


@dataclass(slots=True)
class Session:
    task: Task
    graph: MessageGraph
    memory: TaskMemory | None = None

    @property
    def messages(self) -> list[Message]:
        return self.graph.messages(self.task.id)


def export_session(
    task: Task, graph: MessageGraph, memory: TaskMemory | None = None
) -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "exported_at": utcnow().isoformat(),
        "data": {
            "task": task.to_dict(),
            "messages": [message.to_dict() for message in graph.messages(task.id)],
            "memory": memory.to_dict() if memory else None,
        },
    }


def write_snapshot(path: Path, payload: dict[str, Any]) -> Path:
    if path.is_dir() or not path.suffix:
        path = path / f"{payload['data']['task']['id']}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return path


def load_session(source: Path | dict[str, Any]) -> Session:
    """Rebuild a session; every message is re-appended so integrity is re-checked."""
    if isinstance(source, Path):
        try:
            payload = json.loads(source.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InvalidInput(f"Snapshot {source} is not valid JSON: {exc}") from exc
    else:
        payload = source

    if not isinstance(payload, dict) or "data" not in payload:
        raise InvalidInput("Snapshot is missing its data envelope.")
    version = payload.get("schema_version")
    if version != SCHEMA_VERSION:
        raise InvalidInput(f"Unsupported snapshot schema version: {version!r}")

    data = payload["data"]
    try:
        task = Task.from_dict(data["task"])
        messages = [Message.from_dict(item) for item in data.get("messages", [])]
        memory = TaskMemory.from_dict(data["memory"]) if data.get("memory") else None
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidInput(f"Snapshot is malformed: {exc}") from exc

    graph = MessageGraph()
    graph.extend(messages)
    return Session(task=task, graph=graph, memory=memory)
