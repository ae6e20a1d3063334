"""Host-side consumer of worker mailboxes."""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable

from nanoclaw.authorization import AuthorizationPolicy, Operation
from nanoclaw.db import Database
from nanoclaw.errors import AuthorizationDenied, ScheduleError
from nanoclaw.mailbox import (
    MailboxFormatError,
    TaskOperationRequest,
    parse_message_request,
    parse_task_request,
    pending_entries,
    read_entry,
)
from nanoclaw.models import ScheduledTask, ScheduleType, TaskStatus, Tenant
from nanoclaw.schedule import initial_next_run
from nanoclaw.workspace import WorkspaceManager, is_valid_folder

LOGGER = logging.getLogger(__name__)

SendMessage = Callable[[str, str], Awaitable[None]]
RefreshGroups = Callable[[], Awaitable[None]]


class IpcWatcher:
    """Applies mailbox requests written by workers, subject to the policy.

    The requesting tenant is the one whose directory holds the file. Each file
    is removed (or moved aside when malformed or failing) once handled, so it
    is applied at most once.
    """

    def __init__(
        self,
        db: Database,
        workspace: WorkspaceManager,
        policy: AuthorizationPolicy,
        send_message: SendMessage,
        refresh_groups: RefreshGroups | None = None,
        poll_interval_seconds: float = 1.0,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._workspace = workspace
        self._policy = policy
        self._send_message = send_message
        self._refresh_groups = refresh_groups
        self._poll_interval_seconds = poll_interval_seconds
        self._timezone_name = timezone_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stop_event = asyncio.Event()

    async def run_forever(self) -> None:
        """Scan mailboxes until stop() is called."""

        while not self._stop_event.is_set():
            try:
                await self.process_once()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Mailbox scan failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()

    async def process_once(self) -> int:
        """Handle every pending request once; return how many files were consumed."""

        handled = 0
        for folder in self._workspace.tenant_ipc_folders():
            tenant = self._db.get_tenant(folder) if is_valid_folder(folder) else None
            if tenant is None:
                LOGGER.warning("Ignoring IPC directory of unknown tenant %r", folder)
                continue
            paths = self._workspace.paths_for(folder)
            for path in pending_entries(paths.messages_dir):
                await self._consume(tenant, path, self._handle_message)
                handled += 1
            for path in pending_entries(paths.tasks_dir):
                await self._consume(tenant, path, self._handle_task)
                handled += 1
        return handled

    async def _consume(
        self,
        tenant: Tenant,
        path: Path,
        handler: Callable[[Tenant, dict], Awaitable[None]],
    ) -> None:
        try:
            payload = read_entry(path)
            await handler(tenant, payload)
        except FileNotFoundError:
            # Already consumed by an earlier scan.
            return
        except AuthorizationDenied as exc:
            LOGGER.warning("Unauthorized IPC request from %s dropped (%s): %s", tenant.folder, path.name, exc)
        except MailboxFormatError as exc:
            LOGGER.error("Malformed IPC request from %s: %s", tenant.folder, exc)
            self._quarantine(tenant, path)
            return
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to process IPC request %s from %s", path.name, tenant.folder)
            self._quarantine(tenant, path)
            return
        path.unlink(missing_ok=True)

    def _quarantine(self, tenant: Tenant, path: Path) -> None:
        target = self._workspace.ipc_errors_dir / f"{tenant.folder}-{path.name}"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(path, target)
        except OSError as exc:
            LOGGER.error("Cannot quarantine %s from %s, discarding it: %s", path.name, tenant.folder, exc)
            path.unlink(missing_ok=True)

    async def _handle_message(self, tenant: Tenant, payload: dict) -> None:
        request = parse_message_request(payload)
        self._policy.require(tenant, Operation.SEND_MESSAGE, request.target_chat)
        await self._send_message(request.target_chat, request.body)
        LOGGER.info("IPC message sent from %s to %s", tenant.folder, request.target_chat)

    async def _handle_task(self, tenant: Tenant, payload: dict) -> None:
        request = parse_task_request(payload)
        if request.op == "schedule":
            self._schedule(tenant, request)
        elif request.op in ("pause", "resume", "cancel"):
            self._transition(tenant, request)
        elif request.op == "refresh_groups":
            self._policy.require(tenant, Operation.REFRESH_GROUPS)
            if self._refresh_groups is not None:
                await self._refresh_groups()
            LOGGER.info("Group metadata refresh requested by %s", tenant.folder)
        else:
            self._register_group(tenant, request)

    def _schedule(self, tenant: Tenant, request: TaskOperationRequest) -> None:
        if not request.prompt or not request.schedule_type or not request.schedule_value:
            raise MailboxFormatError("schedule requires prompt, scheduleType and scheduleValue")
        owner_folder = request.target_tenant or tenant.folder
        self._policy.require(tenant, Operation.SCHEDULE, owner_folder)
        owner = self._db.get_tenant(owner_folder)
        if owner is None:
            LOGGER.warning("Cannot schedule task for unknown tenant %s", owner_folder)
            return

        schedule_type = ScheduleType(request.schedule_type)
        now = self._clock()
        try:
            next_run = initial_next_run(schedule_type, request.schedule_value, now, self._timezone_name)
        except ScheduleError as exc:
            LOGGER.warning("Rejected schedule from %s: %s", tenant.folder, exc)
            return

        task = ScheduledTask(
            id=f"task-{uuid.uuid4().hex[:12]}",
            tenant_folder=owner.folder,
            chat_jid=owner.jid,
            prompt=request.prompt,
            schedule_type=schedule_type,
            schedule_value=request.schedule_value,
            status=TaskStatus.ACTIVE,
            next_run=next_run,
            created_at=now,
        )
        self._db.create_task(task)
        LOGGER.info("Task %s scheduled for %s by %s (next run %s)", task.id, owner.folder, tenant.folder, next_run)

    def _transition(self, tenant: Tenant, request: TaskOperationRequest) -> None:
        if not request.task_id:
            raise MailboxFormatError(f"{request.op} requires taskId")
        task = self._db.get_task(request.task_id)
        if task is None:
            LOGGER.warning("%s from %s references unknown task %s", request.op, tenant.folder, request.task_id)
            return
        self._policy.require(tenant, Operation(request.op), task.tenant_folder)

        if task.status is TaskStatus.CANCELLED:
            LOGGER.info("Ignoring %s of cancelled task %s", request.op, task.id)
            return
        new_status = {
            "pause": TaskStatus.PAUSED,
            "resume": TaskStatus.ACTIVE,
            "cancel": TaskStatus.CANCELLED,
        }[request.op]
        self._db.set_task_status(task.id, new_status)
        LOGGER.info("Task %s %s by %s", task.id, new_status.value, tenant.folder)

    def _register_group(self, tenant: Tenant, request: TaskOperationRequest) -> None:
        self._policy.require(tenant, Operation.REGISTER_GROUP)
        if not request.jid or not request.name or not request.folder:
            raise MailboxFormatError("register_group requires jid, name and folder")
        if not is_valid_folder(request.folder):
            raise MailboxFormatError(f"register_group has invalid folder {request.folder!r}")
        try:
            registered = self._db.register_tenant(
                Tenant(folder=request.folder, jid=request.jid, name=request.name)
            )
        except sqlite3.IntegrityError as exc:
            LOGGER.warning("Group %s not registered: %s", request.jid, exc)
            return
        self._workspace.ensure_workspace(registered)
        LOGGER.info("Group %s registered as %s by %s", request.jid, request.folder, tenant.folder)
