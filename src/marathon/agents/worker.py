from __future__ import annotations

from collections.abc import Sequence

from marathon.agents.base import RoleAgent, compose_prompt, format_history
from marathon.models import Message, Phase
from marathon.schemas import AnswerPayload, RevisionPayload, WorkerPayload


class WorkerAgent(RoleAgent):
    role = "WORKER"
    preamble = "You are a Worker Agent executing a complex, multi-phase task."

    @staticmethod
    def _phase_history(previous_phases: Sequence[Phase]) -> str:
        return "\n".join(
            f"Phase {phase.number} ({phase.name}): {phase.worker_thought_trace or 'Completed'}"
            for phase in previous_phases
        )

    async def execute_phase(
        self,
        description: str,
        phase_number: int,
        phase_name: str,
        previous_phases: Sequence[Phase],
        *,
        feedback: str | None = None,
        pending_questions: Sequence[str] | None = None,
        compressed_context: str = "",
    ) -> WorkerPayload:
        questions = ""
        if pending_questions:
            questions = "\n".join(
                f"{index}. {question}" for index, question in enumerate(pending_questions, 1)
            )
        prompt = compose_prompt(
            self.preamble,
            [
                ("Task", description),
                ("Current Phase", f"{phase_number} - {phase_name}"),
                ("Long-term Memory", compressed_context),
                ("Previous Phases", self._phase_history(previous_phases)),
                ("Feedback from other agents", feedback),
                ("Pending Code Review questions you must answer", questions),
            ],
            "Produce a thought trace (your internal reasoning for this phase) and a "
            "progress update. Incorporate any review suggestions or questions. If you "
            "commit to a significant choice, state it in keyDecision.",
        )
        return await self.request(prompt, WorkerPayload)

    async def answer_question(
        self,
        description: str,
        phase_name: str,
        question: str,
        thought_trace: str,
        history: Sequence[Message],
    ) -> AnswerPayload:
        prompt = compose_prompt(
            "You are a Worker Agent. The Code Review Agent has asked you a question.",
            [
                ("Task", description),
                ("Current Phase", phase_name),
                ("Your Thought Trace", thought_trace),
                ("Question from Code Review", question),
                ("Recent Conversation", format_history(history, 6)),
            ],
            "Answer the question directly and explain how you will incorporate it. "
            "Include an updated thoughtTrace only if your reasoning changed.",
        )
        return await self.request(prompt, AnswerPayload)

    async def revise(
        self,
        description: str,
        phase_name: str,
        original_output: str,
        original_thought_trace: str,
        feedback: str,
        suggestions: Sequence[str],
    ) -> RevisionPayload:
        prompt = compose_prompt(
            "You are a Worker Agent revising your phase output after code review.",
            [
                ("Task", description),
                ("Current Phase", phase_name),
                ("Original Output", original_output),
                ("Original Thought Trace", original_thought_trace),
                ("Code Review Feedback", feedback),
                ("Suggestions", "\n".join(f"- {item}" for item in suggestions)),
            ],
            "Return the revised output, the revised thought trace, and a short summary "
            "of what changed.",
        )
        return await self.request(prompt, RevisionPayload)
