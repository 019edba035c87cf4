from __future__ import annotations

from collections.abc import Sequence

from marathon.agents.base import RoleAgent, compose_prompt, format_history
from marathon.models import AgentRole, Message
from marathon.schemas import ReviewPayload

QUESTION_MARKER = "Question:"


def extract_suggestions(review: ReviewPayload) -> list[str]:
    """Suggestions carried by a review.

    An explicit ``suggestions`` list wins, even when empty; otherwise every
    non-empty line of the feedback that is not a question counts.
    """
    if review.suggestions is not None:
        return [item.strip() for item in review.suggestions if item.strip()]
    return [
        line.strip()
        for line in review.text.splitlines()
        if line.strip() and QUESTION_MARKER not in line
    ]


class CriticAgent(RoleAgent):
    role = "CODE_REVIEW"
    preamble = "You are a Code Review Agent monitoring a Worker Agent."

    async def review(
        self,
        description: str,
        phase_name: str,
        thought_trace: str,
        phase_messages: Sequence[Message],
    ) -> ReviewPayload:
        relevant = [
            message
            for message in phase_messages
            if message.role in {AgentRole.WORKER, AgentRole.CODE_REVIEW}
        ]
        prompt = compose_prompt(
            self.preamble,
            [
                ("Task", description),
                ("Current Phase", phase_name),
                ("Worker's Thought Trace", thought_trace),
                ("Recent Conversation", format_history(relevant, 5)),
            ],
            "Give feedback on quality, edge cases and improvements. List concrete "
            "suggestions in suggestions (empty when none) and ask a clarifying question "
            "only if you need one.",
        )
        return await self.request(prompt, ReviewPayload)
