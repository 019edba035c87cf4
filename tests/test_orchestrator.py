import asyncio
from typing import Any

import pytest

from marathon.errors import InvalidInput
from marathon.graph import ANSWER_PREFIX, QUESTION_PREFIX, RETRY_PREFIX, SELF_CORRECTING_PREFIX
from marathon.models import AgentRole, AuditVerdict, Message, Phase, PhaseStatus, TaskStatus
from marathon.orchestrator import PhaseOrchestrator


def verdict(name: str, score: int, analysis: str = "checked") -> dict[str, Any]:
    return {"verdict": name, "score": score, "analysis": analysis}


def _by_role(messages: list[Message], role: AgentRole) -> list[Message]:
    return [message for message in messages if message.role == role]


def test_start_rejects_empty_description(scripted_port, fast_pipeline) -> None:
    orchestrator = PhaseOrchestrator(scripted_port(), pipeline=fast_pipeline())

    with pytest.raises(InvalidInput):
        orchestrator.start("   ")
    with pytest.raises(InvalidInput):
        orchestrator.create("")
    assert orchestrator.tasks == []


def test_happy_path_completes_without_retries(scripted_port, fast_pipeline) -> None:
    events: list[dict[str, Any]] = []
    port = scripted_port()
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline(), event_hook=events.append)

    task = asyncio.run(orchestrator.run("X"))

    assert task.status is TaskStatus.COMPLETED
    assert task.finished_at is not None
    assert task.current_phase == 2
    for phase in task.phases:
        assert phase.status is PhaseStatus.VERIFIED
        assert phase.attempts == 1
        assert phase.audit_score == 90
    messages = orchestrator.messages(task)
    assert not any(message.body.startswith(RETRY_PREFIX) for message in messages)
    for number in (1, 2):
        in_phase = [message for message in messages if message.phase == number]
        assert len(_by_role(in_phase, AgentRole.AUDIT)) == 1
    assert port.calls == ["worker", "review", "audit", "summary"] * 2
    assert events[0]["event"] == "task_started"
    assert events[-1] == {
        "event": "task_finished",
        "task_id": task.id,
        "status": "COMPLETED",
        "reason": None,
    }


def test_rejection_then_retry_success(scripted_port, fast_pipeline) -> None:
    port = scripted_port(
        audit=[
            verdict("REJECTED", 40, "too shallow"),
            verdict("VERIFIED", 85),
            verdict("VERIFIED", 90),
        ]
    )
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline())

    task = asyncio.run(orchestrator.run("X"))

    first = task.phases[0]
    assert first.status is PhaseStatus.VERIFIED
    assert first.attempts == 2
    assert first.audit_score == 85
    assert task.status is TaskStatus.COMPLETED

    phase_one = orchestrator.graph.messages(task.id, 1)
    audits = _by_role(phase_one, AgentRole.AUDIT)
    assert len(audits) == 2
    [worker] = orchestrator.graph.roots_for_phase(1, task.id)
    [retry] = [message for message in phase_one if message.body.startswith(RETRY_PREFIX)]
    [marker] = [message for message in phase_one if message.body.startswith(SELF_CORRECTING_PREFIX)]
    assert retry.is_revision is True
    assert retry.original_message_id == worker.id
    assert retry.responds_to == audits[0].id
    assert retry.changes == "Retry after REJECTED: too shallow"
    assert marker.responds_to == audits[0].id
    assert audits[1].responds_to == retry.id
    assert audits[1].verdict is AuditVerdict.VERIFIED

    retry_prompt = port.prompts_for("worker")[1]
    assert "Previous attempt was REJECTED. too shallow" in retry_prompt
    assert port.calls[:6] == ["worker", "review", "audit", "worker", "audit", "summary"]

    memory = orchestrator.memory_for(task)
    assert memory is not None
    assert memory.self_corrections[0].lesson.startswith("Self-corrected in Phase 1: Retry after")


def test_persistent_rejection_fails_the_task(scripted_port, fast_pipeline) -> None:
    port = scripted_port(audit=[verdict("REJECTED", 20)])
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline())

    task = asyncio.run(orchestrator.run("X"))

    assert task.status is TaskStatus.FAILED
    assert task.phases[0].status is PhaseStatus.REJECTED
    assert task.phases[1].status is PhaseStatus.PENDING
    assert "rejected" in (task.failure_reason or "")
    assert len(_by_role(orchestrator.graph.messages(task.id, 1), AgentRole.AUDIT)) == 2
    assert orchestrator.graph.messages(task.id, 2) == []


def test_continue_on_rejection_runs_every_phase(scripted_port, fast_pipeline) -> None:
    port = scripted_port(audit=[verdict("HALLUCINATION_DETECTED", 10)])
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline(continue_on_rejection=True))

    task = asyncio.run(orchestrator.run("X"))

    assert task.status is TaskStatus.COMPLETED
    assert [phase.status for phase in task.phases] == [PhaseStatus.REJECTED] * 2
    second_phase_prompt = port.prompts_for("worker")[2]
    assert "Audit Note: HALLUCINATION_DETECTED (Score: 10/100)" in second_phase_prompt
    assert "Code Review Feedback: Looks solid." in second_phase_prompt


def test_stop_during_critic_call_discards_the_rest(scripted_port, fast_pipeline) -> None:
    port = scripted_port()
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline())

    async def scenario():
        task = orchestrator.start("X")
        port.hooks["review"] = lambda: orchestrator.stop(task)
        return await orchestrator.wait(task)

    task = asyncio.run(scenario())

    assert port.calls == ["worker", "review"]
    roles = [message.role for message in orchestrator.messages(task)]
    assert roles == [AgentRole.WORKER, AgentRole.CODE_REVIEW]
    assert task.status is TaskStatus.FAILED
    assert task.phases[0].status is PhaseStatus.IN_PROGRESS
    assert task.phases[1].status is PhaseStatus.PENDING
    assert orchestrator.memory_for(task) is None


def test_stop_interrupts_pacing_delay(scripted_port, fast_pipeline) -> None:
    port = scripted_port()
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline(step_delay_seconds=30.0))

    async def scenario():
        task = orchestrator.start("X")
        await asyncio.sleep(0.05)
        orchestrator.stop(task)
        return await asyncio.wait_for(orchestrator.wait(task), timeout=2.0)

    task = asyncio.run(scenario())

    assert port.calls == ["worker"]
    assert task.status is TaskStatus.FAILED


def test_critic_suggestions_trigger_a_revision(scripted_port, fast_pipeline) -> None:
    events: list[dict[str, Any]] = []
    port = scripted_port(review=[{"text": "Add input validation.\nHandle timeouts."}])
    orchestrator = PhaseOrchestrator(
        port, pipeline=fast_pipeline(phases=["Analysis"]), event_hook=events.append
    )

    task = asyncio.run(orchestrator.run("X"))

    messages = orchestrator.messages(task)
    worker, review = messages[0], messages[1]
    [revision] = [m for m in messages if m.is_revision]
    assert revision.responds_to == review.id
    assert revision.original_message_id == worker.id
    assert revision.changes == "Applied review suggestions"
    assert task.phases[0].worker_thought_trace == "Revised trace"
    assert "- Add input validation." in port.prompts_for("revision")[0]
    assert "Revised trace" in port.prompts_for("audit")[0]
    assert _by_role(messages, AgentRole.AUDIT)[0].responds_to == review.id
    assert "revision_applied" in [event["event"] for event in events]
    tree = orchestrator.graph.render_thread(worker.id)
    assert tree.children[0].children[0].original == worker


def test_critic_question_is_answered_before_audit(scripted_port, fast_pipeline) -> None:
    port = scripted_port(
        review=[{"text": "Fine.", "question": "Which cache backend?", "suggestions": []}],
        answer=[{"text": "Redis.", "thoughtTrace": "Answer trace"}],
    )
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline(phases=["Analysis"]))

    task = asyncio.run(orchestrator.run("X"))

    worker, review, question, answer, audit = orchestrator.messages(task)
    assert question.body == f"{QUESTION_PREFIX}Which cache backend?"
    assert question.responds_to == review.id
    assert answer.body == f"{ANSWER_PREFIX}Redis."
    assert answer.responds_to == question.id
    assert audit.responds_to == question.id
    assert task.phases[0].critic_question == "Which cache backend?"
    assert task.phases[0].worker_thought_trace == "Answer trace"
    assert "Which cache backend?" in port.prompts_for("answer")[0]
    assert "revision" not in port.calls
    assert orchestrator.graph.roots_for_phase(1, task.id) == [worker]


def test_critic_only_sees_current_phase(scripted_port, fast_pipeline) -> None:
    port = scripted_port(
        worker=[
            {"text": "alpha output", "thoughtTrace": "alpha trace"},
            {"text": "beta output", "thoughtTrace": "beta trace"},
        ]
    )
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline())

    asyncio.run(orchestrator.run("X"))

    second_review = port.prompts_for("review")[1]
    assert "beta output" in second_review
    assert "alpha output" not in second_review
    second_worker = port.prompts_for("worker")[1]
    assert "Phase 1 (Analysis): alpha trace" in second_worker
    assert "Task Summary: Task is progressing." in second_worker


def test_critic_on_retry_reviews_before_second_audit(scripted_port, fast_pipeline) -> None:
    port = scripted_port(audit=[verdict("LAZY_REASONING", 30), verdict("VERIFIED", 80)])
    orchestrator = PhaseOrchestrator(
        port, pipeline=fast_pipeline(phases=["Analysis"], critic_on_retry=True)
    )

    task = asyncio.run(orchestrator.run("X"))

    assert port.calls == ["worker", "review", "audit", "worker", "review", "audit", "summary"]
    messages = orchestrator.messages(task)
    [retry] = [m for m in messages if m.body.startswith(RETRY_PREFIX)]
    second_review = _by_role(messages, AgentRole.CODE_REVIEW)[-1]
    assert second_review.responds_to == retry.id
    assert _by_role(messages, AgentRole.AUDIT)[-1].responds_to == second_review.id
    assert task.phases[0].status is PhaseStatus.VERIFIED


def test_worker_failure_is_replaced_by_fallback(scripted_port, fast_pipeline) -> None:
    events: list[dict[str, Any]] = []
    port = scripted_port(failures={"worker"})
    orchestrator = PhaseOrchestrator(
        port, pipeline=fast_pipeline(phases=["Analysis"]), event_hook=events.append
    )

    task = asyncio.run(orchestrator.run("X"))

    worker = orchestrator.messages(task)[0]
    assert worker.body.startswith("[ERROR] Worker capability failed: scripted worker failure")
    assert worker.thought_trace == "Error occurred"
    failures = [event for event in events if event["event"] == "capability_failure"]
    assert failures[0]["role"] == "WORKER"
    assert task.status is TaskStatus.COMPLETED


def test_review_failure_never_triggers_revision(scripted_port, fast_pipeline) -> None:
    port = scripted_port(failures={"review"})
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline(phases=["Analysis"]))

    task = asyncio.run(orchestrator.run("X"))

    review = _by_role(orchestrator.messages(task), AgentRole.CODE_REVIEW)[0]
    assert review.body.startswith("[ERROR] Review unavailable:")
    assert "revision" not in port.calls
    assert task.status is TaskStatus.COMPLETED


def test_audit_failure_leaves_phase_rejected(scripted_port, fast_pipeline) -> None:
    port = scripted_port(failures={"audit"})
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline())

    task = asyncio.run(orchestrator.run("X"))

    audits = _by_role(orchestrator.messages(task), AgentRole.AUDIT)
    assert [audit.verdict for audit in audits] == [AuditVerdict.PENDING] * 2
    assert audits[0].body.startswith("PENDING (Score: 0/100)\nAudit failed:")
    assert audits[1].body.startswith("Still PENDING")
    assert task.phases[0].status is PhaseStatus.REJECTED
    assert task.phases[0].audit_verdict is AuditVerdict.PENDING
    assert task.status is TaskStatus.FAILED


def test_phase_status_is_monotone(scripted_port, fast_pipeline) -> None:
    events: list[dict[str, Any]] = []
    port = scripted_port(audit=[verdict("REJECTED", 40), verdict("VERIFIED", 70)])
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline(), event_hook=events.append)

    asyncio.run(orchestrator.run("X"))

    lifecycle = [
        (event["event"], event["phase"])
        for event in events
        if event["event"] in {"phase_started", "phase_finished"}
    ]
    assert lifecycle == [
        ("phase_started", 1),
        ("phase_finished", 1),
        ("phase_started", 2),
        ("phase_finished", 2),
    ]

    phase = Phase(1, "Analysis")
    with pytest.raises(ValueError):
        phase.advance(PhaseStatus.VERIFIED)
    phase.advance(PhaseStatus.IN_PROGRESS)
    phase.advance(PhaseStatus.REJECTED)
    with pytest.raises(ValueError):
        phase.advance(PhaseStatus.VERIFIED)


def test_discard_evicts_task_memory(scripted_port, fast_pipeline) -> None:
    orchestrator = PhaseOrchestrator(scripted_port(), pipeline=fast_pipeline(phases=["Analysis"]))

    task = asyncio.run(orchestrator.run("X"))
    assert orchestrator.memory_for(task) is not None

    orchestrator.discard(task)

    assert orchestrator.memory_for(task) is None
    assert orchestrator.tasks == []
    assert orchestrator.memory.get_compressed_context(task.id, 2) == ""


def test_start_without_running_loop_leaves_no_task(scripted_port, fast_pipeline) -> None:
    events: list[dict[str, Any]] = []
    orchestrator = PhaseOrchestrator(
        scripted_port(), pipeline=fast_pipeline(), event_hook=events.append
    )

    with pytest.raises(RuntimeError):
        orchestrator.start("X")

    assert orchestrator.tasks == []
    assert events == []


def test_stop_before_start_fails_the_task(scripted_port, fast_pipeline) -> None:
    port = scripted_port()
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline())

    task = orchestrator.create("X")
    orchestrator.stop(task)

    assert task.status is TaskStatus.FAILED
    assert task.failure_reason == "Stopped before start."
    assert task.finished_at is not None
    assert all(phase.status is PhaseStatus.PENDING for phase in task.phases)
    assert port.calls == []


def test_concurrent_tasks_share_nothing_but_the_graph(scripted_port, fast_pipeline) -> None:
    port = scripted_port()
    orchestrator = PhaseOrchestrator(port, pipeline=fast_pipeline(step_delay_seconds=0.001))

    async def scenario():
        alpha = orchestrator.start("Alpha ledger")
        beta = orchestrator.start("Beta ledger")
        await asyncio.gather(orchestrator.wait(alpha), orchestrator.wait(beta))
        return alpha, beta

    alpha, beta = asyncio.run(scenario())

    assert len(orchestrator.graph) == 12
    assert len(orchestrator.graph.roots_for_phase(1)) == 2
    for task, other in ((alpha, beta), (beta, alpha)):
        assert task.status is TaskStatus.COMPLETED
        messages = orchestrator.messages(task)
        assert len(messages) == 6
        assert {message.task_id for message in messages} == {task.id}
        roots = orchestrator.graph.roots_for_phase(1, task.id)
        assert [root.task_id for root in roots] == [task.id]

        memory = orchestrator.memory_for(task)
        assert memory is not None and memory.task_id == task.id
        assert sorted(memory.phase_summaries) == [1, 2]
        assert memory is not orchestrator.memory_for(other)

        own_prompts = [
            prompt
            for prompt in port.prompts_for("worker")
            if f"Task: {task.description}" in prompt
        ]
        assert len(own_prompts) == 2
        assert all(other.description not in prompt for prompt in own_prompts)
        assert own_prompts[1].count("Code Review Feedback: Looks solid.") == 1
