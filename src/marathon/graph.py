"""Append-only message log and thread reconstruction."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from marathon.errors import DanglingReference
from marathon.models import AgentRole, Message

QUESTION_PREFIX = "Question: "
ANSWER_PREFIX = "[Answering Code Review] "
RETRY_PREFIX = "[RETRY] "
SELF_CORRECTING_PREFIX = "[SELF-CORRECTING] "


@dataclass(slots=True)
class ThreadNode:
    message: Message
    original: Message | None = None
    children: list[ThreadNode] = field(default_factory=list)

    def walk(self) -> Iterable[ThreadNode]:
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message.to_dict(),
            "original": self.original.to_dict() if self.original else None,
            "children": [child.to_dict() for child in self.children],
        }


def is_root(message: Message) -> bool:
    return (
        message.role == AgentRole.WORKER
        and message.responds_to is None
        and not message.is_revision
        and not message.body.startswith(ANSWER_PREFIX)
        and not message.body.startswith(RETRY_PREFIX)
    )


def collect_thread(root: Message, pool: Sequence[Message]) -> list[Message]:
    """Collect ``root`` and every message of ``pool`` linked back to it.

    ``pool`` must be in append order. Links are ``responds_to`` and
    ``original_message_id``; only messages of the root's phase qualify.
    The result is ordered by timestamp, then append order.
    """
    candidates = [m for m in pool if m.phase == root.phase and m.task_id == root.task_id]
    order = {message.id: index for index, message in enumerate(candidates)}
    linked: dict[str, list[Message]] = {}
    for message in candidates:
        for parent_id in {message.responds_to, message.original_message_id}:
            if parent_id:
                linked.setdefault(parent_id, []).append(message)

    visited: dict[str, Message] = {root.id: root}
    stack = [root.id]
    while stack:
        current = stack.pop()
        for child in linked.get(current, []):
            if child.id not in visited:
                visited[child.id] = child
                stack.append(child.id)

    for message in candidates:
        if message.id in visited:
            continue
        if message.responds_to in visited or message.original_message_id in visited:
            visited[message.id] = message

    return sorted(
        visited.values(),
        key=lambda m: (m.timestamp, order.get(m.id, -1)),
    )


def nest_thread(
    root: Message, members: Sequence[Message], lookup: dict[str, Message]
) -> ThreadNode:
    member_ids = {message.id for message in members}
    children: dict[str, list[Message]] = {}
    for message in members:
        if message.id == root.id:
            continue
        if message.responds_to in member_ids:
            parent_id = message.responds_to
        elif message.original_message_id in member_ids:
            parent_id = message.original_message_id
        else:
            continue
        children.setdefault(parent_id, []).append(message)

    seen: set[str] = set()

    def build(message: Message) -> ThreadNode:
        seen.add(message.id)
        original = lookup.get(message.original_message_id) if message.is_revision else None
        node = ThreadNode(message=message, original=original)
        for child in children.get(message.id, []):
            if child.id not in seen:
                node.children.append(build(child))
        return node

    return build(root)


class MessageGraph:
    """Shared append-only store of messages across tasks.

    Appends are serialised with a lock; reads take a consistent copy.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: dict[str, Message] = {}
        self._log: list[Message] = []

    def __len__(self) -> int:
        return len(self._log)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def append(self, message: Message) -> Message:
        with self._lock:
            self._validate(message)
            self._messages[message.id] = message
            self._log.append(message)
        return message

    def extend(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self.append(message)

    def _validate(self, message: Message) -> None:
        if message.id in self._messages:
            raise DanglingReference(message.id, message.id, "duplicate message id")
        if message.responds_to is not None:
            parent = self._messages.get(message.responds_to)
            if parent is None:
                raise DanglingReference(message.id, message.responds_to, "unknown responds_to")
            if parent.task_id != message.task_id:
                raise DanglingReference(
                    message.id, message.responds_to, "responds_to crosses tasks"
                )
            if parent.phase > message.phase:
                raise DanglingReference(
                    message.id, message.responds_to, "responds_to a later phase"
                )
        if message.original_message_id is not None:
            if not message.is_revision:
                raise DanglingReference(
                    message.id,
                    message.original_message_id,
                    "original_message_id set on a non-revision",
                )
            original = self._messages.get(message.original_message_id)
            if original is None:
                raise DanglingReference(
                    message.id, message.original_message_id, "unknown original_message_id"
                )
            if original.phase != message.phase or original.task_id != message.task_id:
                raise DanglingReference(
                    message.id,
                    message.original_message_id,
                    "revision target is in another phase",
                )

    def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    def require(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise KeyError(f"Unknown message: {message_id}")
        return message

    def messages(self, task_id: str | None = None, phase: int | None = None) -> list[Message]:
        with self._lock:
            log = list(self._log)
        return [
            message
            for message in log
            if (task_id is None or message.task_id == task_id)
            and (phase is None or message.phase == phase)
        ]

    def task_ids(self) -> list[str]:
        return list(dict.fromkeys(message.task_id for message in self.messages()))

    def build_thread(self, root_id: str) -> list[Message]:
        root = self.require(root_id)
        return collect_thread(root, self.messages(root.task_id, root.phase))

    def roots_for_phase(self, phase: int, task_id: str | None = None) -> list[Message]:
        return [message for message in self.messages(task_id, phase) if is_root(message)]

    def revision_pair(self, message_id: str) -> tuple[Message, Message | None]:
        message = self.require(message_id)
        if not message.is_revision or message.original_message_id is None:
            return message, None
        return message, self._messages.get(message.original_message_id)

    def render_thread(self, root_id: str) -> ThreadNode:
        root = self.require(root_id)
        return nest_thread(root, self.build_thread(root_id), self._messages)

    def phase_forest(self, phase: int, task_id: str | None = None) -> list[ThreadNode]:
        return [self.render_thread(root.id) for root in self.roots_for_phase(phase, task_id)]

    def forest(self, task_id: str | None = None) -> dict[int, list[ThreadNode]]:
        phases = sorted({message.phase for message in self.messages(task_id)})
        return {phase: self.phase_forest(phase, task_id) for phase in phases}
