"""Error taxonomy for worker orchestration."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Discriminates why an invocation or mailbox request failed."""

    SPAWN = "spawn"
    TIMEOUT = "timeout"
    WORKER_EXIT = "worker_exit"
    OUTPUT_PARSE = "output_parse"
    FILESYSTEM = "filesystem"
    AUTHORIZATION = "authorization"
    # The worker ran fine and reported status "error" itself.
    WORKER = "worker"


class OrchestrationError(RuntimeError):
    """Base class for failures raised inside the orchestration core."""

    kind: ErrorKind


class SpawnError(OrchestrationError):
    """The worker process could not be started."""

    kind = ErrorKind.SPAWN


class WorkerTimeoutError(OrchestrationError):
    """The worker exceeded its wall-clock budget and was killed."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Agent timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class WorkerExitError(OrchestrationError):
    """The worker exited with a non-zero code."""

    kind = ErrorKind.WORKER_EXIT

    def __init__(self, exit_code: int | None, stderr_tail: str) -> None:
        super().__init__(f"Agent exited with code {exit_code}: {stderr_tail}")
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class OutputParseError(OrchestrationError):
    """The worker's stdout did not contain a usable structured result."""

    kind = ErrorKind.OUTPUT_PARSE


class WorkspaceError(OrchestrationError):
    """A tenant directory could not be created or written."""

    kind = ErrorKind.FILESYSTEM


class AuthorizationDenied(OrchestrationError):
    """A mailbox request is not permitted for the requesting tenant.

    Never reported back to the worker; the request is logged and dropped.
    """

    kind = ErrorKind.AUTHORIZATION


class ScheduleError(ValueError):
    """A schedule kind/value pair cannot produce a run time."""
