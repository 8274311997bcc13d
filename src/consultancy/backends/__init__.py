from consultancy.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    GenerationBackend,
)
from consultancy.backends.claude import ClaudeCodeBackend
from consultancy.backends.codex import CodexBackend
from consultancy.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "GenerationBackend",
    "ResilientBackend",
    "RetryPolicy",
]
