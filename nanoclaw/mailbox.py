"""Filesystem mailbox shared by workers and the host.

Workers drop one JSON object per file into ``messages/`` or ``tasks/`` under
their IPC directory; the host writes read-only snapshots next to them. Every
write goes to a temporary file in the target directory and is renamed into
place, so readers only ever see complete files.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from nanoclaw.models import AvailableGroup, ScheduledTask

LOGGER = logging.getLogger(__name__)

TASKS_SNAPSHOT = "current_tasks.json"
GROUPS_SNAPSHOT = "available_groups.json"
TEMP_SUFFIX = ".tmp"


class MailboxFormatError(ValueError):
    """A mailbox file does not hold a valid request."""


class OutgoingMessageRequest(BaseModel):
    """Worker request to send ``body`` to ``targetChat``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    target_chat: str = Field(alias="targetChat", min_length=1)
    body: str = Field(min_length=1)


class TaskOperationRequest(BaseModel):
    """Worker request to change the scheduled task set or the tenant registry."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    op: Literal["schedule", "pause", "resume", "cancel", "refresh_groups", "register_group"]
    task_id: str | None = Field(default=None, alias="taskId")
    prompt: str | None = None
    schedule_type: Literal["cron", "interval", "once"] | None = Field(default=None, alias="scheduleType")
    schedule_value: str | None = Field(default=None, alias="scheduleValue")
    target_tenant: str | None = Field(default=None, alias="targetTenant")
    jid: str | None = None
    name: str | None = None
    folder: str | None = None


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write ``payload`` as JSON to ``path`` via a temp file and ``os.replace``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".", suffix=TEMP_SUFFIX)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def unique_entry_name() -> str:
    """Return a file name that sorts by creation time and never collides."""

    return f"{time.time_ns()}-{secrets.token_hex(4)}.json"


def write_entry(directory: Path, payload: dict[str, Any]) -> Path:
    """Drop one request into a mailbox directory (the worker side of the protocol)."""

    path = directory / unique_entry_name()
    atomic_write_json(path, payload)
    return path


def pending_entries(directory: Path) -> list[Path]:
    """List complete request files in ``directory`` in name order."""

    if not directory.is_dir():
        return []
    return sorted(
        entry
        for entry in directory.iterdir()
        if entry.is_file() and entry.suffix == ".json" and not entry.name.startswith(".")
    )


def read_entry(path: Path) -> dict[str, Any]:
    """Load a request file; raise MailboxFormatError if it is not a JSON object."""

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise MailboxFormatError(f"{path.name}: invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MailboxFormatError(f"{path.name}: expected a JSON object")
    return payload


def parse_message_request(payload: dict[str, Any]) -> OutgoingMessageRequest:
    try:
        return OutgoingMessageRequest.model_validate(payload)
    except ValidationError as exc:
        raise MailboxFormatError(f"Invalid message request: {exc}") from exc


def parse_task_request(payload: dict[str, Any]) -> TaskOperationRequest:
    try:
        return TaskOperationRequest.model_validate(payload)
    except ValidationError as exc:
        raise MailboxFormatError(f"Invalid task request: {exc}") from exc


def write_tasks_snapshot(ipc_dir: Path, tasks: Iterable[ScheduledTask]) -> Path:
    path = ipc_dir / TASKS_SNAPSHOT
    atomic_write_json(path, [task.to_snapshot() for task in tasks])
    return path


def write_groups_snapshot(ipc_dir: Path, groups: Iterable[AvailableGroup], last_sync: datetime) -> Path:
    path = ipc_dir / GROUPS_SNAPSHOT
    atomic_write_json(
        path,
        {"groups": [group.to_snapshot() for group in groups], "lastSync": last_sync.isoformat()},
    )
    return path
