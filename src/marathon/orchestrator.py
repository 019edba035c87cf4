"""Drives a task through its phases with Worker, Critic and Audit turns."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from marathon.agents import AuditAgent, CriticAgent, SummarizerAgent, WorkerAgent
from marathon.agents.critic import extract_suggestions
from marathon.backends.base import CapabilityPort
from marathon.config import MarathonConfig, MemoryConfig, PipelineConfig
from marathon.errors import CapabilityFailure, Cancelled, InvalidInput
from marathon.graph import (
    ANSWER_PREFIX,
    QUESTION_PREFIX,
    RETRY_PREFIX,
    SELF_CORRECTING_PREFIX,
    MessageGraph,
)
from marathon.memory import MemoryCompressor
from marathon.models import (
    DEFAULT_PHASES,
    AgentRole,
    AuditVerdict,
    Message,
    Phase,
    PhaseStatus,
    Task,
    TaskMemory,
    TaskStatus,
    new_id,
    utcnow,
)
from marathon.schemas import AnswerPayload, AuditPayload, ReviewPayload, WorkerPayload

logger = logging.getLogger(__name__)

OrchestratorEventHook = Callable[[dict[str, Any]], None]
ResultT = TypeVar("ResultT")


@dataclass(slots=True)
class _Run:
    task: Task
    stop_requested: asyncio.Event = field(default_factory=asyncio.Event)
    runner: asyncio.Task[None] | None = None

    @property
    def stopped(self) -> bool:
        return self.stop_requested.is_set()


def _verdict_text(audit: AuditPayload, *, retry: bool = False) -> str:
    if not retry:
        headline = str(audit.verdict)
    elif audit.verdict == AuditVerdict.VERIFIED:
        headline = f"{audit.verdict} after correction"
    else:
        headline = f"Still {audit.verdict}"
    return f"{headline} (Score: {audit.score}/100)\n{audit.analysis}"


class PhaseOrchestrator:
    def __init__(
        self,
        port: CapabilityPort,
        *,
        graph: MessageGraph | None = None,
        memory: MemoryCompressor | None = None,
        pipeline: PipelineConfig | None = None,
        memory_settings: MemoryConfig | None = None,
        event_hook: OrchestratorEventHook | None = None,
    ) -> None:
        self.worker = WorkerAgent(port)
        self.critic = CriticAgent(port)
        self.auditor = AuditAgent(port)
        self.pipeline = pipeline or PipelineConfig()
        self.graph = graph or MessageGraph()
        self.memory = memory or MemoryCompressor(
            SummarizerAgent(port), memory_settings, event_hook=event_hook
        )
        self.event_hook = event_hook
        self._runs: dict[str, _Run] = {}

    @classmethod
    def from_config(
        cls,
        port: CapabilityPort,
        config: MarathonConfig,
        *,
        graph: MessageGraph | None = None,
        event_hook: OrchestratorEventHook | None = None,
    ) -> PhaseOrchestrator:
        return cls(
            port,
            graph=graph,
            pipeline=config.pipeline,
            memory_settings=config.memory,
            event_hook=event_hook,
        )

    def _emit(self, event: str, **fields: Any) -> None:
        if self.event_hook:
            self.event_hook({"event": event, **fields})

    # Public surface

    @property
    def tasks(self) -> list[Task]:
        return [run.task for run in self._runs.values()]

    def messages(self, task: Task) -> list[Message]:
        return self.graph.messages(task.id)

    def memory_for(self, task: Task) -> TaskMemory | None:
        return self.memory.get(task.id)

    def create(self, description: str) -> Task:
        if not description or not description.strip():
            raise InvalidInput("Task description must not be empty.")
        phase_names = list(self.pipeline.phases) or list(DEFAULT_PHASES)
        task = Task.create(description.strip(), phase_names)
        self._runs[task.id] = _Run(task=task)
        return task

    def start(self, description: str) -> Task:
        """Create a task and schedule its pipeline on the running event loop.

        Returns immediately; use ``wait`` to join the pipeline.
        """
        task = self.create(description)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            del self._runs[task.id]
            raise
        run = self._runs[task.id]
        task.status = TaskStatus.IN_PROGRESS
        self._emit("task_started", task_id=task.id, phases=[p.name for p in task.phases])
        logger.info("Task %s started with %d phases", task.id, len(task.phases))
        run.runner = loop.create_task(self._drive(run), name=f"marathon-{task.id}")
        return task

    async def run(self, description: str) -> Task:
        task = self.start(description)
        await self.wait(task)
        return task

    async def wait(self, task: Task) -> Task:
        run = self._run_for(task)
        if run.runner is not None:
            await run.runner
        return task

    def stop(self, task: Task) -> None:
        run = self._run_for(task)
        if not run.stopped:
            logger.info("Stop requested for task %s", task.id)
        run.stop_requested.set()
        if run.runner is None and task.status == TaskStatus.PENDING:
            self._finish(task, TaskStatus.FAILED, "Stopped before start.")

    def discard(self, task: Task) -> None:
        run = self._runs.pop(task.id, None)
        if run is not None:
            run.stop_requested.set()
            if run.runner is not None and not run.runner.done():
                run.runner.cancel()
        self.memory.evict(task.id)

    def _run_for(self, task: Task) -> _Run:
        run = self._runs.get(task.id)
        if run is None:
            raise KeyError(f"Unknown task: {task.id}")
        return run

    # Pipeline

    async def _drive(self, run: _Run) -> None:
        task = run.task
        try:
            for index, phase in enumerate(task.phases):
                self._checkpoint(run)
                task.current_phase = index
                await self._run_phase(run, phase)
                if (
                    phase.status == PhaseStatus.REJECTED
                    and not self.pipeline.continue_on_rejection
                ):
                    self._finish(
                        task,
                        TaskStatus.FAILED,
                        f"Phase {phase.number} ({phase.name}) was rejected after retry.",
                    )
                    return
            self._checkpoint(run)
        except Cancelled:
            self._finish(task, TaskStatus.FAILED, "Stopped before completion.")
            return
        except asyncio.CancelledError:
            self._finish(task, TaskStatus.FAILED, "Discarded before completion.")
            raise
        except Exception as exc:
            logger.exception("Task %s aborted", task.id)
            self._finish(task, TaskStatus.FAILED, str(exc))
            raise
        task.current_phase = len(task.phases)
        self._finish(task, TaskStatus.COMPLETED)

    def _finish(self, task: Task, status: TaskStatus, reason: str | None = None) -> None:
        task.status = status
        task.finished_at = utcnow()
        task.failure_reason = reason
        logger.info("Task %s finished: %s%s", task.id, status, f" ({reason})" if reason else "")
        self._emit("task_finished", task_id=task.id, status=str(status), reason=reason)

    def _checkpoint(self, run: _Run) -> None:
        if run.stopped:
            raise Cancelled(run.task.id)

    async def _pause(self, run: _Run, seconds: float) -> None:
        self._checkpoint(run)
        if seconds > 0:
            try:
                await asyncio.wait_for(run.stop_requested.wait(), timeout=seconds)
            except TimeoutError:
                pass
        self._checkpoint(run)

    def _append(
        self,
        task: Task,
        role: AgentRole,
        body: str,
        phase: int,
        **fields: Any,
    ) -> Message:
        message = self.graph.append(
            Message(id=new_id(), task_id=task.id, role=role, body=body, phase=phase, **fields)
        )
        self._emit(
            "message_appended",
            task_id=task.id,
            message_id=message.id,
            role=str(role),
            phase=phase,
            responds_to=message.responds_to,
            is_revision=message.is_revision,
        )
        return message

    async def _invoke(
        self,
        run: _Run,
        phase: Phase,
        call: Callable[[], Awaitable[ResultT]],
        fallback: Callable[[CapabilityFailure], ResultT],
    ) -> ResultT:
        self._checkpoint(run)
        try:
            return await call()
        except CapabilityFailure as exc:
            logger.warning(
                "Task %s phase %d: %s capability failed: %s",
                run.task.id,
                phase.number,
                exc.role,
                exc.reason,
            )
            self._emit(
                "capability_failure",
                task_id=run.task.id,
                phase=phase.number,
                role=exc.role,
                reason=exc.reason,
            )
            return fallback(exc)

    def _feedback_context(self, task: Task, phase_number: int) -> tuple[str, list[str]]:
        earlier = [m for m in self.graph.messages(task.id) if m.phase < phase_number]
        revised = {m.responds_to for m in earlier if m.is_revision and m.responds_to}
        answered = {m.responds_to for m in earlier if m.body.startswith(ANSWER_PREFIX)}

        notes: list[str] = []
        questions: list[str] = []
        for message in earlier:
            if message.role == AgentRole.CODE_REVIEW:
                if message.body.startswith(QUESTION_PREFIX):
                    if message.id not in answered:
                        questions.append(message.body.removeprefix(QUESTION_PREFIX))
                elif message.id not in revised:
                    notes.append(f"Code Review Feedback: {message.body}")
            elif message.role == AgentRole.AUDIT and message.verdict is not None:
                if message.verdict != AuditVerdict.VERIFIED:
                    notes.append(f"Audit Note: {message.body}")
        notes.extend(f"Code Review Question: {question}" for question in questions)
        return "\n".join(notes), questions

    async def _work(
        self,
        run: _Run,
        phase: Phase,
        *,
        feedback: str | None,
        questions: Sequence[str],
    ) -> WorkerPayload:
        task = run.task
        previous = [p for p in task.phases if p.number < phase.number]
        context = self.memory.get_compressed_context(task.id, phase.number)
        return await self._invoke(
            run,
            phase,
            lambda: self.worker.execute_phase(
                task.description,
                phase.number,
                phase.name,
                previous,
                feedback=feedback or None,
                pending_questions=list(questions) or None,
                compressed_context=context,
            ),
            lambda exc: WorkerPayload(
                text=f"[ERROR] Worker capability failed: {exc.reason}",
                thought_trace="Error occurred",
            ),
        )

    async def _review(self, run: _Run, phase: Phase, thought_trace: str) -> ReviewPayload:
        scoped = self.graph.messages(run.task.id, phase.number)
        return await self._invoke(
            run,
            phase,
            lambda: self.critic.review(run.task.description, phase.name, thought_trace, scoped),
            lambda exc: ReviewPayload(
                text=f"[ERROR] Review unavailable: {exc.reason}", suggestions=[]
            ),
        )

    async def _audit(
        self, run: _Run, phase: Phase, thought_trace: str, review_text: str
    ) -> AuditPayload:
        audit = await self._invoke(
            run,
            phase,
            lambda: self.auditor.audit(
                run.task.description, phase.name, thought_trace, review_text
            ),
            lambda exc: AuditPayload(
                verdict=AuditVerdict.PENDING,
                analysis=f"Audit failed: {exc.reason}",
                score=0,
            ),
        )
        phase.audit_verdict = audit.verdict
        phase.audit_score = audit.score
        phase.touch()
        self._emit(
            "audit_verdict",
            task_id=run.task.id,
            phase=phase.number,
            attempt=phase.attempts,
            verdict=str(audit.verdict),
            score=audit.score,
        )
        return audit

    async def _run_phase(self, run: _Run, phase: Phase) -> None:
        task = run.task
        pipeline = self.pipeline
        phase.advance(PhaseStatus.IN_PROGRESS)
        phase.attempts = 1
        self._emit("phase_started", task_id=task.id, phase=phase.number, name=phase.name)
        logger.info("Task %s phase %d (%s) started", task.id, phase.number, phase.name)

        feedback, questions = self._feedback_context(task, phase.number)
        work = await self._work(run, phase, feedback=feedback, questions=questions)
        worker_message = self._append(
            task,
            AgentRole.WORKER,
            work.text,
            phase.number,
            thought_trace=work.thought_trace,
            key_decision=work.key_decision,
        )
        phase.worker_thought_trace = work.thought_trace
        phase.touch()
        await self._pause(run, pipeline.step_delay_seconds)

        review = await self._review(run, phase, work.thought_trace)
        review_message = self._append(
            task,
            AgentRole.CODE_REVIEW,
            review.text,
            phase.number,
            responds_to=worker_message.id,
        )
        phase.critic_feedback = review.text
        latest_review = review_message

        if review.question:
            question_message = self._append(
                task,
                AgentRole.CODE_REVIEW,
                f"{QUESTION_PREFIX}{review.question}",
                phase.number,
                responds_to=review_message.id,
            )
            phase.critic_question = review.question
            latest_review = question_message
            await self._pause(run, pipeline.step_delay_seconds)
            history = self.graph.messages(task.id, phase.number)
            answer = await self._invoke(
                run,
                phase,
                lambda: self.worker.answer_question(
                    task.description,
                    phase.name,
                    review.question or "",
                    work.thought_trace,
                    history,
                ),
                lambda exc: AnswerPayload(text=f"[ERROR] Answer unavailable: {exc.reason}"),
            )
            self._append(
                task,
                AgentRole.WORKER,
                f"{ANSWER_PREFIX}{answer.text}",
                phase.number,
                thought_trace=answer.thought_trace,
                responds_to=question_message.id,
            )
            if answer.thought_trace:
                phase.worker_thought_trace = answer.thought_trace
                phase.touch()

        suggestions = extract_suggestions(review)
        if suggestions:
            await self._pause(run, pipeline.step_delay_seconds)
            revision = await self._invoke(
                run,
                phase,
                lambda: self.worker.revise(
                    task.description,
                    phase.name,
                    work.text,
                    work.thought_trace,
                    review.text,
                    suggestions,
                ),
                lambda exc: None,
            )
            if revision is not None:
                revised = self._append(
                    task,
                    AgentRole.WORKER,
                    revision.revised_output,
                    phase.number,
                    thought_trace=revision.revised_thought_trace,
                    responds_to=review_message.id,
                    is_revision=True,
                    original_message_id=worker_message.id,
                    changes=revision.changes,
                )
                phase.worker_thought_trace = revision.revised_thought_trace
                phase.touch()
                self._emit(
                    "revision_applied",
                    task_id=task.id,
                    phase=phase.number,
                    message_id=revised.id,
                    suggestions=len(suggestions),
                )

        await self._pause(run, pipeline.step_delay_seconds)
        audit = await self._audit(run, phase, phase.worker_thought_trace or "", review.text)
        audit_message = self._append(
            task,
            AgentRole.AUDIT,
            _verdict_text(audit),
            phase.number,
            responds_to=latest_review.id,
            verdict=audit.verdict,
            score=audit.score,
        )

        if audit.verdict != AuditVerdict.VERIFIED:
            audit = await self._retry(run, phase, worker_message, audit_message, audit, review)

        phase.advance(
            PhaseStatus.VERIFIED if audit.verdict == AuditVerdict.VERIFIED else PhaseStatus.REJECTED
        )
        self._emit(
            "phase_finished",
            task_id=task.id,
            phase=phase.number,
            status=str(phase.status),
            attempts=phase.attempts,
        )
        logger.info(
            "Task %s phase %d finished %s after %d attempt(s)",
            task.id,
            phase.number,
            phase.status,
            phase.attempts,
        )

        self._checkpoint(run)
        await self.memory.update(
            task.id, task.description, task.phases, self.graph.messages(task.id)
        )
        await self._pause(run, pipeline.step_delay_seconds)

    async def _retry(
        self,
        run: _Run,
        phase: Phase,
        worker_message: Message,
        audit_message: Message,
        first: AuditPayload,
        review: ReviewPayload,
    ) -> AuditPayload:
        task = run.task
        pipeline = self.pipeline
        phase.attempts = 2
        self._emit(
            "retry_started",
            task_id=task.id,
            phase=phase.number,
            verdict=str(first.verdict),
        )
        self._append(
            task,
            AgentRole.WORKER,
            f"{SELF_CORRECTING_PREFIX}Self-correcting based on feedback...",
            phase.number,
            responds_to=audit_message.id,
        )
        await self._pause(run, pipeline.retry_delay_seconds)

        in_phase = self.graph.messages(task.id, phase.number)
        critic_log = "\n".join(
            m.body for m in in_phase if m.role == AgentRole.CODE_REVIEW
        )
        feedback = "\n\n".join(
            part
            for part in (
                f"Previous attempt was {first.verdict}. {first.analysis}",
                review.text,
                critic_log,
            )
            if part.strip()
        )
        questions = [
            m.body.removeprefix(QUESTION_PREFIX)
            for m in in_phase
            if m.role == AgentRole.CODE_REVIEW and m.body.startswith(QUESTION_PREFIX)
        ]

        retry = await self._work(run, phase, feedback=feedback, questions=questions)
        retry_message = self._append(
            task,
            AgentRole.WORKER,
            f"{RETRY_PREFIX}{retry.text}",
            phase.number,
            thought_trace=retry.thought_trace,
            responds_to=audit_message.id,
            is_revision=True,
            original_message_id=worker_message.id,
            changes=f"Retry after {first.verdict}: {first.analysis}",
            key_decision=retry.key_decision,
        )
        phase.worker_thought_trace = retry.thought_trace
        phase.touch()

        gate_parent = retry_message
        review_text = review.text
        if pipeline.critic_on_retry:
            await self._pause(run, pipeline.step_delay_seconds)
            second_review = await self._review(run, phase, retry.thought_trace)
            gate_parent = self._append(
                task,
                AgentRole.CODE_REVIEW,
                second_review.text,
                phase.number,
                responds_to=retry_message.id,
            )
            phase.critic_feedback = second_review.text
            review_text = second_review.text

        await self._pause(run, pipeline.step_delay_seconds)
        second = await self._audit(run, phase, retry.thought_trace, review_text)
        self._append(
            task,
            AgentRole.AUDIT,
            _verdict_text(second, retry=True),
            phase.number,
            responds_to=gate_parent.id,
            verdict=second.verdict,
            score=second.score,
        )
        return second
