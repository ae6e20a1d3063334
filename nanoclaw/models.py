"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from nanoclaw.errors import ErrorKind, OrchestrationError


class ScheduleType(str, Enum):
    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


class TaskStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class Message:
    """Inbound chat message normalized by a channel."""

    chat_jid: str
    sender_id: str
    text: str
    timestamp: datetime
    chat_name: str | None = None
    message_id: str | None = None


@dataclass(slots=True, frozen=True)
class Tenant:
    """A registered chat with its own workspace, mailbox and session storage.

    ``folder`` is the stable identifier and names every per-tenant directory.
    """

    folder: str
    jid: str
    name: str
    is_privileged: bool = False
    added_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class WorkerInvocation:
    """One request to run a worker, serialized as a single JSON line on stdin."""

    prompt: str
    tenant_id: str
    chat_target: str
    is_privileged: bool
    session_id: str | None = None
    is_scheduled_task: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prompt": self.prompt,
            "tenantId": self.tenant_id,
            "chatTarget": self.chat_target,
            "isPrivileged": self.is_privileged,
        }
        if self.session_id:
            payload["sessionId"] = self.session_id
        if self.is_scheduled_task:
            payload["isScheduledTask"] = True
        return payload


@dataclass(slots=True, frozen=True)
class WorkerResult:
    """Terminal outcome of an invocation.

    ``error_kind`` and the truncation flags are host-side only and never part
    of the worker's output.
    """

    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def failure(cls, exc: OrchestrationError) -> WorkerResult:
        return cls(status="error", result=None, error=str(exc), error_kind=exc.kind)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status, "result": self.result}
        if self.new_session_id is not None:
            payload["newSessionId"] = self.new_session_id
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class ScheduledTask:
    """Represents a persisted scheduled task."""

    id: str
    tenant_folder: str
    chat_jid: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    status: TaskStatus
    next_run: datetime | None
    last_run: datetime | None = None
    last_result: str | None = None
    created_at: datetime | None = None

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "groupFolder": self.tenant_folder,
            "prompt": self.prompt,
            "schedule_type": self.schedule_type.value,
            "schedule_value": self.schedule_value,
            "status": self.status.value,
            "next_run": self.next_run.isoformat() if self.next_run else None,
        }


@dataclass(slots=True)
class TaskRun:
    """One execution of a scheduled task."""

    task_id: str
    run_at: datetime
    duration_ms: int
    status: Literal["success", "error"]
    result: str | None = None
    error: str | None = None


@dataclass(slots=True)
class AvailableGroup:
    """A chat known to the channel, as shown to the privileged tenant."""

    jid: str
    name: str
    last_activity: datetime | None
    is_registered: bool = False

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "jid": self.jid,
            "name": self.name,
            "lastActivity": self.last_activity.isoformat() if self.last_activity else None,
            "isRegistered": self.is_registered,
        }


@dataclass(slots=True)
class WorkspacePaths:
    """Resolved directories for one tenant."""

    working_dir: Path
    global_dir: Path
    ipc_dir: Path
    messages_dir: Path
    tasks_dir: Path
    session_dir: Path
    logs_dir: Path
