from __future__ import annotations

from marathon.agents.base import RoleAgent, compose_prompt
from marathon.schemas import AuditPayload


class AuditAgent(RoleAgent):
    role = "AUDIT"
    preamble = "You are the Audit gate of a multi-agent pipeline."

    async def audit(
        self,
        description: str,
        phase_name: str,
        thought_trace: str,
        review_feedback: str | None = None,
    ) -> AuditPayload:
        prompt = compose_prompt(
            self.preamble,
            [
                ("Task", description),
                ("Phase", phase_name),
                ("Worker's Thought Trace", thought_trace),
                ("Code Review Feedback", review_feedback),
            ],
            "Audit this thought trace for logical fallacies, lazy reasoning, deception "
            "and hallucinations. Return a verdict (VERIFIED, REJECTED, "
            "HALLUCINATION_DETECTED, LAZY_REASONING), an analysis and a score from 0 to 100.",
        )
        return await self.request(prompt, AuditPayload)
