from marathon.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    CapabilityPort,
    MalformedResponseError,
)
from marathon.backends.claude import ClaudeCodeBackend
from marathon.backends.openai_sdk import OpenAIBackend
from marathon.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CapabilityPort",
    "ClaudeCodeBackend",
    "MalformedResponseError",
    "OpenAIBackend",
    "ResilientBackend",
    "RetryPolicy",
]
