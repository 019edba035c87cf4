from marathon.agents.auditor import AuditAgent
from marathon.agents.base import RoleAgent
from marathon.agents.critic import CriticAgent, extract_suggestions
from marathon.agents.summarizer import SummarizerAgent
from marathon.agents.worker import WorkerAgent

__all__ = [
    "AuditAgent",
    "CriticAgent",
    "RoleAgent",
    "SummarizerAgent",
    "WorkerAgent",
    "extract_suggestions",
]
