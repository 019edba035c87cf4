from __future__ import annotations

from collections.abc import Sequence

from marathon.agents.base import RoleAgent, compose_prompt
from marathon.models import Phase
from marathon.schemas import SummaryPayload


class SummarizerAgent(RoleAgent):
    role = "SUMMARIZER"
    preamble = "Generate a concise task summary for long-term memory."

    async def summarize(
        self,
        description: str,
        phases: Sequence[Phase],
        previous_summary: str | None,
        max_words: int,
    ) -> str:
        phase_status = "\n".join(
            f"Phase {phase.number} ({phase.name}): {phase.status}" for phase in phases
        )
        prompt = compose_prompt(
            self.preamble,
            [
                ("Task", description),
                ("Previous Summary", previous_summary),
                ("Phase Status", phase_status),
            ],
            f"Update the summary (at most {max_words} words) with the core objective, "
            "current progress, key insights and important constraints.",
        )
        payload = await self.request(prompt, SummaryPayload)
        return payload.summary
