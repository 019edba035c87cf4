from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

DEFAULT_PHASES = ("Analysis", "Planning", "Implementation", "Review", "Finalization")


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid4().hex


class TaskStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PhaseStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class AgentRole(StrEnum):
    WORKER = "WORKER"
    CODE_REVIEW = "CODE_REVIEW"
    AUDIT = "AUDIT"


class AuditVerdict(StrEnum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    HALLUCINATION_DETECTED = "HALLUCINATION_DETECTED"
    LAZY_REASONING = "LAZY_REASONING"


_PHASE_TRANSITIONS: dict[PhaseStatus, set[PhaseStatus]] = {
    PhaseStatus.PENDING: {PhaseStatus.IN_PROGRESS},
    PhaseStatus.IN_PROGRESS: {PhaseStatus.VERIFIED, PhaseStatus.REJECTED},
    PhaseStatus.VERIFIED: set(),
    PhaseStatus.REJECTED: set(),
}


@dataclass(slots=True)
class Phase:
    number: int
    name: str
    status: PhaseStatus = PhaseStatus.PENDING
    worker_thought_trace: str | None = None
    critic_feedback: str | None = None
    critic_question: str | None = None
    audit_verdict: AuditVerdict | None = None
    audit_score: int | None = None
    attempts: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def finished(self) -> bool:
        return self.status in {PhaseStatus.VERIFIED, PhaseStatus.REJECTED}

    def advance(self, status: PhaseStatus) -> None:
        if status not in _PHASE_TRANSITIONS[self.status]:
            raise ValueError(
                f"Phase {self.number} cannot move from {self.status} to {status}."
            )
        self.status = status
        self.touch()

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "status": str(self.status),
            "worker_thought_trace": self.worker_thought_trace,
            "critic_feedback": self.critic_feedback,
            "critic_question": self.critic_question,
            "audit_verdict": str(self.audit_verdict) if self.audit_verdict else None,
            "audit_score": self.audit_score,
            "attempts": self.attempts,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Phase:
        verdict = payload.get("audit_verdict")
        return cls(
            number=int(payload["number"]),
            name=str(payload["name"]),
            status=PhaseStatus(payload.get("status", PhaseStatus.PENDING)),
            worker_thought_trace=payload.get("worker_thought_trace"),
            critic_feedback=payload.get("critic_feedback"),
            critic_question=payload.get("critic_question"),
            audit_verdict=AuditVerdict(verdict) if verdict else None,
            audit_score=payload.get("audit_score"),
            attempts=int(payload.get("attempts", 0)),
            updated_at=_parse_time(payload.get("updated_at")),
        )


@dataclass(slots=True)
class Task:
    id: str
    description: str
    phases: list[Phase]
    current_phase: int = 0
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    failure_reason: str | None = None

    @classmethod
    def create(cls, description: str, phase_names: list[str] | tuple[str, ...]) -> Task:
        return cls(
            id=new_id(),
            description=description,
            phases=[Phase(number=index, name=name) for index, name in enumerate(phase_names, 1)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "phases": [phase.to_dict() for phase in self.phases],
            "current_phase": self.current_phase,
            "status": str(self.status),
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        finished = payload.get("finished_at")
        return cls(
            id=str(payload["id"]),
            description=str(payload["description"]),
            phases=[Phase.from_dict(item) for item in payload.get("phases", [])],
            current_phase=int(payload.get("current_phase", 0)),
            status=TaskStatus(payload.get("status", TaskStatus.PENDING)),
            created_at=_parse_time(payload.get("created_at")),
            finished_at=_parse_time(finished) if finished else None,
            failure_reason=payload.get("failure_reason"),
        )


@dataclass(slots=True, frozen=True)
class Message:
    id: str
    task_id: str
    role: AgentRole
    body: str
    phase: int
    thought_trace: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    responds_to: str | None = None
    is_revision: bool = False
    original_message_id: str | None = None
    changes: str | None = None
    verdict: AuditVerdict | None = None
    score: int | None = None
    key_decision: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "role": str(self.role),
            "body": self.body,
            "phase": self.phase,
            "thought_trace": self.thought_trace,
            "timestamp": self.timestamp.isoformat(),
            "responds_to": self.responds_to,
            "is_revision": self.is_revision,
            "original_message_id": self.original_message_id,
            "changes": self.changes,
            "verdict": str(self.verdict) if self.verdict else None,
            "score": self.score,
            "key_decision": self.key_decision,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Message:
        verdict = payload.get("verdict")
        score = payload.get("score")
        return cls(
            id=str(payload["id"]),
            task_id=str(payload["task_id"]),
            role=AgentRole(payload["role"]),
            body=str(payload.get("body", "")),
            phase=int(payload["phase"]),
            thought_trace=payload.get("thought_trace"),
            timestamp=_parse_time(payload.get("timestamp")),
            responds_to=payload.get("responds_to"),
            is_revision=bool(payload.get("is_revision", False)),
            original_message_id=payload.get("original_message_id"),
            changes=payload.get("changes"),
            verdict=AuditVerdict(verdict) if verdict else None,
            score=int(score) if score is not None else None,
            key_decision=payload.get("key_decision"),
        )


@dataclass(slots=True)
class KeyDecision:
    id: str
    phase: int
    decision: str
    rationale: str
    message_id: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "phase": self.phase,
            "decision": self.decision,
            "rationale": self.rationale,
            "message_id": self.message_id,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> KeyDecision:
        return cls(
            id=str(payload["id"]),
            phase=int(payload["phase"]),
            decision=str(payload["decision"]),
            rationale=str(payload.get("rationale", "")),
            message_id=str(payload["message_id"]),
            timestamp=_parse_time(payload.get("timestamp")),
        )


@dataclass(slots=True)
class SelfCorrection:
    id: str
    phase: int
    original_approach: str
    issue: str
    corrected_approach: str
    lesson: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "phase": self.phase,
            "original_approach": self.original_approach,
            "issue": self.issue,
            "corrected_approach": self.corrected_approach,
            "lesson": self.lesson,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SelfCorrection:
        return cls(
            id=str(payload["id"]),
            phase=int(payload["phase"]),
            original_approach=str(payload.get("original_approach", "")),
            issue=str(payload.get("issue", "")),
            corrected_approach=str(payload.get("corrected_approach", "")),
            lesson=str(payload.get("lesson", "")),
            timestamp=_parse_time(payload.get("timestamp")),
        )


@dataclass(slots=True)
class TaskMemory:
    """Derived, bounded view of a task's history used as prompt context."""

    task_id: str
    task_summary: str
    key_decisions: list[KeyDecision] = field(default_factory=list)
    phase_summaries: dict[int, str] = field(default_factory=dict)
    self_corrections: list[SelfCorrection] = field(default_factory=list)
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_summary": self.task_summary,
            "key_decisions": [item.to_dict() for item in self.key_decisions],
            "phase_summaries": {str(k): v for k, v in sorted(self.phase_summaries.items())},
            "self_corrections": [item.to_dict() for item in self.self_corrections],
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskMemory:
        return cls(
            task_id=str(payload["task_id"]),
            task_summary=str(payload.get("task_summary", "")),
            key_decisions=[
                KeyDecision.from_dict(item) for item in payload.get("key_decisions", [])
            ],
            phase_summaries={
                int(key): str(value) for key, value in payload.get("phase_summaries", {}).items()
            },
            self_corrections=[
                SelfCorrection.from_dict(item) for item in payload.get("self_corrections", [])
            ],
            last_updated=_parse_time(payload.get("last_updated")),
        )


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
    return utcnow()
