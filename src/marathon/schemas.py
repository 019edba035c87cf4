"""Typed payloads exchanged with the reasoning service.

Each model doubles as the JSON schema sent with the request and as the
validator applied to the structured response.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from marathon.models import AuditVerdict


class CapabilityModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @classmethod
    def response_schema(cls) -> dict[str, Any]:
        return cls.model_json_schema(by_alias=True)


class WorkerPayload(CapabilityModel):
    text: str
    thought_trace: str = Field(alias="thoughtTrace")
    key_decision: str | None = Field(default=None, alias="keyDecision")


class AnswerPayload(CapabilityModel):
    text: str
    thought_trace: str | None = Field(default=None, alias="thoughtTrace")


class ReviewPayload(CapabilityModel):
    text: str
    question: str | None = None
    suggestions: list[str] | None = None


class RevisionPayload(CapabilityModel):
    revised_output: str = Field(alias="revisedOutput")
    revised_thought_trace: str = Field(alias="revisedThoughtTrace")
    changes: str


class AuditPayload(CapabilityModel):
    verdict: AuditVerdict
    analysis: str = "No analysis provided"
    score: int = Field(ge=0, le=100)


class SummaryPayload(CapabilityModel):
    summary: str
