"""Bounded long-term memory derived from a task's message log."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from collections.abc import Callable, Sequence
from typing import Any

from marathon.agents.summarizer import SummarizerAgent
from marathon.config import MemoryConfig
from marathon.errors import CapabilityFailure
from marathon.models import (
    AgentRole,
    KeyDecision,
    Message,
    Phase,
    PhaseStatus,
    SelfCorrection,
    TaskMemory,
    utcnow,
)

logger = logging.getLogger(__name__)

DECISION_PATTERN = re.compile(r"decision|decided|chose|selected|will use", re.IGNORECASE)

MemoryEventHook = Callable[[dict[str, Any]], None]


def bound_words(text: str, max_words: int) -> str:
    words = text.split()
    if len(words) <= max_words:
        return text.strip()
    return " ".join(words[:max_words])


class MemoryCompressor:
    """Per-task memory store keyed by task id.

    ``update`` is serialised per task; different tasks never share a lock.
    ``get_compressed_context`` only reads the stored memory.
    An ``evict`` that lands while an update is in flight wins: the update
    still returns its result but does not store it.
    """

    def __init__(
        self,
        summarizer: SummarizerAgent | None = None,
        settings: MemoryConfig | None = None,
        event_hook: MemoryEventHook | None = None,
    ) -> None:
        self.summarizer = summarizer
        self.settings = settings or MemoryConfig()
        self.event_hook = event_hook
        self._memories: dict[str, TaskMemory] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._registry = threading.Lock()

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._memories

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        with self._registry:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[task_id] = lock
            return lock

    def get(self, task_id: str) -> TaskMemory | None:
        return self._memories.get(task_id)

    def restore(self, memory: TaskMemory) -> None:
        with self._registry:
            self._memories[memory.task_id] = memory

    def evict(self, task_id: str) -> bool:
        with self._registry:
            self._locks.pop(task_id, None)
            return self._memories.pop(task_id, None) is not None

    async def update(
        self,
        task_id: str,
        description: str,
        phases: Sequence[Phase],
        messages: Sequence[Message],
    ) -> TaskMemory:
        lock = self._lock_for(task_id)
        async with lock:
            previous = self._memories.get(task_id)
            summary_call = asyncio.ensure_future(self._summarize(description, phases, previous))
            try:
                key_decisions = self.extract_key_decisions(phases, messages)
                phase_summaries = self.digest_phases(phases, messages)
                self_corrections = self.extract_self_corrections(messages)
            except BaseException:
                summary_call.cancel()
                raise
            task_summary = await summary_call

            memory = TaskMemory(
                task_id=task_id,
                task_summary=task_summary,
                key_decisions=key_decisions,
                phase_summaries=phase_summaries,
                self_corrections=self_corrections,
                last_updated=utcnow(),
            )
            with self._registry:
                if self._locks.get(task_id) is not lock:
                    logger.debug("Memory for %s was evicted mid-update; result dropped", task_id)
                    return memory
                self._memories[task_id] = memory
        logger.debug(
            "Memory for %s: %d decisions, %d digests, %d corrections",
            task_id,
            len(key_decisions),
            len(phase_summaries),
            len(self_corrections),
        )
        return memory

    async def _summarize(
        self,
        description: str,
        phases: Sequence[Phase],
        previous: TaskMemory | None,
    ) -> str:
        fallback = previous.task_summary if previous and previous.task_summary else description
        if self.summarizer is None:
            return fallback
        try:
            summary = await self.summarizer.summarize(
                description,
                phases,
                previous.task_summary if previous else None,
                self.settings.summary_max_words,
            )
        except CapabilityFailure as exc:
            logger.warning("Summary unavailable, keeping previous: %s", exc.reason)
            if self.event_hook:
                self.event_hook(
                    {"event": "capability_failure", "role": exc.role, "reason": exc.reason}
                )
            return fallback
        summary = bound_words(summary, self.settings.summary_max_words)
        return summary or fallback

    def extract_key_decisions(
        self, phases: Sequence[Phase], messages: Sequence[Message]
    ) -> list[KeyDecision]:
        settings = self.settings
        decisions: list[KeyDecision] = []
        for phase in phases:
            if not phase.worker_thought_trace:
                continue
            for message in messages:
                if message.phase != phase.number or message.role != AgentRole.WORKER:
                    continue
                if not message.thought_trace:
                    continue
                if settings.structured_decisions and message.key_decision:
                    decision = message.key_decision[: settings.decision_chars]
                elif DECISION_PATTERN.search(message.thought_trace):
                    decision = message.body[: settings.decision_chars]
                else:
                    continue
                decisions.append(
                    KeyDecision(
                        id=f"decision-{message.id}",
                        phase=phase.number,
                        decision=decision,
                        rationale=message.thought_trace[: settings.rationale_chars],
                        message_id=message.id,
                        timestamp=message.timestamp,
                    )
                )
        return decisions[-settings.max_key_decisions :] if settings.max_key_decisions else []

    def digest_phases(
        self, phases: Sequence[Phase], messages: Sequence[Message]
    ) -> dict[int, str]:
        settings = self.settings
        digests: dict[int, str] = {}
        for phase in phases:
            if phase.status == PhaseStatus.PENDING:
                continue
            in_phase = [message for message in messages if message.phase == phase.number]
            workers = [message for message in in_phase if message.role == AgentRole.WORKER]
            if not workers:
                continue
            audits = [
                message
                for message in in_phase
                if message.role == AgentRole.AUDIT and message.verdict is not None
            ]
            digest = (
                f"Phase {phase.number} ({phase.name}): "
                f"{workers[0].body[: settings.digest_chars]}..."
            )
            if audits:
                digest += f" [{audits[-1].body[: settings.verdict_chars]}]"
            digests[phase.number] = digest
        return digests

    def extract_self_corrections(self, messages: Sequence[Message]) -> list[SelfCorrection]:
        by_id = {message.id: message for message in messages}
        corrections: list[SelfCorrection] = []
        for message in messages:
            if not (message.is_revision and message.original_message_id and message.changes):
                continue
            original = by_id.get(message.original_message_id)
            if original is None:
                continue
            corrections.append(
                SelfCorrection(
                    id=message.id,
                    phase=message.phase,
                    original_approach=original.body[:200],
                    issue=message.changes,
                    corrected_approach=message.body[:200],
                    lesson=f"Self-corrected in Phase {message.phase}: {message.changes}",
                    timestamp=message.timestamp,
                )
            )
        limit = self.settings.max_self_corrections
        return corrections[-limit:] if limit else []

    def get_compressed_context(self, task_id: str, before_phase: int) -> str:
        memory = self._memories.get(task_id)
        if memory is None:
            return ""

        sections = [f"Task Summary: {memory.task_summary}"]
        for number in sorted(memory.phase_summaries):
            if number < before_phase:
                sections.append(f"Phase {number} Summary: {memory.phase_summaries[number]}")

        decisions = [item for item in memory.key_decisions if item.phase < before_phase]
        if decisions:
            lines = "\n".join(f"- {item.decision}: {item.rationale}" for item in decisions)
            sections.append(f"Key Decisions:\n{lines}")

        corrections = [item for item in memory.self_corrections if item.phase < before_phase]
        if corrections:
            lines = "\n".join(f"- {item.lesson}" for item in corrections)
            sections.append(f"Lessons Learned:\n{lines}")

        return "\n\n".join(sections)
