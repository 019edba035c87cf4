from __future__ import annotations


class MarathonError(RuntimeError):
    """Base class for orchestration errors."""


class InvalidInput(MarathonError):
    """Raised before a task starts when its input is unusable."""


class CapabilityFailure(MarathonError):
    """A reasoning-service call failed or returned an unusable payload."""

    def __init__(
        self,
        role: str,
        reason: str,
        *,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(f"{role} capability failed: {reason}")
        self.role = role
        self.reason = reason
        self.original_error = original_error


class DanglingReference(MarathonError):
    """Raised when an appended message violates message-graph integrity."""

    def __init__(self, message_id: str, reference: str | None, detail: str) -> None:
        super().__init__(f"Message {message_id}: {detail}")
        self.message_id = message_id
        self.reference = reference
        self.detail = detail


class Cancelled(MarathonError):
    """Cooperative stop observed for a task."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} was stopped.")
        self.task_id = task_id
