"""Host orchestration: tenants, snapshots, worker runs, background loops."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Callable

from nanoclaw.authorization import AuthorizationPolicy
from nanoclaw.channel import ChatChannel
from nanoclaw.db import Database
from nanoclaw.errors import WorkspaceError
from nanoclaw.ipc import IpcWatcher
from nanoclaw.mailbox import write_groups_snapshot, write_tasks_snapshot
from nanoclaw.models import Message, ScheduledTask, Tenant, WorkerInvocation, WorkerResult
from nanoclaw.runner import AgentRunner
from nanoclaw.scheduler import TaskScheduler
from nanoclaw.workspace import WorkspaceManager, folder_for_chat

LOGGER = logging.getLogger(__name__)


class Orchestrator:
    """Routes inbound chat messages and scheduled prompts to worker runs."""

    def __init__(
        self,
        db: Database,
        workspace: WorkspaceManager,
        runner: AgentRunner,
        channel: ChatChannel,
        policy: AuthorizationPolicy | None = None,
        main_tenant_folder: str = "main",
        main_chat_jid: str | None = None,
        scheduler_poll_interval_seconds: float = 60.0,
        ipc_poll_interval_seconds: float = 1.0,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._workspace = workspace
        self._runner = runner
        self._channel = channel
        self._policy = policy or AuthorizationPolicy()
        self._main_tenant_folder = main_tenant_folder
        self._main_chat_jid = main_chat_jid
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._inflight: set[asyncio.Task] = set()
        self.scheduler = TaskScheduler(
            db=db,
            invoke=self.run_scheduled,
            deliver=self.deliver_task_result,
            poll_interval_seconds=scheduler_poll_interval_seconds,
            timezone_name=timezone_name,
            clock=self._clock,
        )
        self.ipc_watcher = IpcWatcher(
            db=db,
            workspace=workspace,
            policy=self._policy,
            send_message=self.send_message,
            refresh_groups=self.refresh_groups,
            poll_interval_seconds=ipc_poll_interval_seconds,
            timezone_name=timezone_name,
            clock=self._clock,
        )

    async def run(self) -> None:
        """Start background loops and process inbound messages until the channel closes."""

        scheduler_task = asyncio.create_task(self.scheduler.run_forever(), name="task-scheduler")
        ipc_task = asyncio.create_task(self.ipc_watcher.run_forever(), name="ipc-watcher")
        try:
            async for message in self._channel.poll_messages():
                task = asyncio.create_task(self.handle_inbound(message), name=f"inbound-{message.chat_jid}")
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
        finally:
            if self._inflight:
                await asyncio.gather(*self._inflight, return_exceptions=True)
            self.scheduler.stop()
            self.ipc_watcher.stop()
            await asyncio.gather(scheduler_task, ipc_task, return_exceptions=True)
            LOGGER.info("Orchestrator shutdown complete")

    async def handle_inbound(self, message: Message) -> WorkerResult | None:
        """Run the chat's tenant worker on ``message`` and reply with its result."""

        try:
            self._db.upsert_chat(message.chat_jid, message.chat_name, message.timestamp)
            tenant = self.ensure_tenant(message)
            result = await self.run_agent(tenant, message.text)
            if result.ok and result.result:
                await self.send_message(tenant.jid, result.result)
            elif not result.ok:
                LOGGER.error("Agent run for %s failed (%s): %s", tenant.folder, result.error_kind, result.error)
            return result
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to handle inbound message for %s", message.chat_jid)
            return None

    def ensure_tenant(self, message: Message) -> Tenant:
        """Return the chat's tenant, registering it on first activity."""

        tenant = self._db.get_tenant_by_jid(message.chat_jid)
        if tenant is not None:
            return tenant

        name = message.chat_name or message.chat_jid
        if message.chat_jid == self._main_chat_jid:
            candidate = Tenant(folder=self._main_tenant_folder, jid=message.chat_jid, name=name, is_privileged=True)
        else:
            candidate = Tenant(folder=self._free_folder(folder_for_chat(name)), jid=message.chat_jid, name=name)
        try:
            tenant = self._db.register_tenant(candidate)
        except sqlite3.IntegrityError:
            # Registered concurrently by another inbound message of the same chat.
            existing = self._db.get_tenant_by_jid(message.chat_jid)
            if existing is None:
                raise
            return existing
        LOGGER.info("Registered tenant %s for chat %s (privileged=%s)", tenant.folder, tenant.jid, tenant.is_privileged)
        return tenant

    def _free_folder(self, base: str) -> str:
        folder, suffix = base, 1
        while folder == self._main_tenant_folder or self._db.get_tenant(folder) is not None:
            suffix += 1
            folder = f"{base}-{suffix}"
        return folder

    def write_snapshots(self, tenant: Tenant) -> None:
        """Write the task and group views ``tenant`` is allowed to see."""

        paths = self._workspace.ensure_workspace(tenant)
        tasks = self._policy.visible_tasks(tenant, self._db.list_tasks())
        groups = self._policy.visible_groups(tenant, self._db.list_available_groups())
        try:
            write_tasks_snapshot(paths.ipc_dir, tasks)
            write_groups_snapshot(paths.ipc_dir, groups, self._clock())
        except OSError as exc:
            raise WorkspaceError(f"Failed to write snapshots for {tenant.folder}: {exc}") from exc

    async def run_agent(self, tenant: Tenant, prompt: str, is_scheduled: bool = False) -> WorkerResult:
        """Refresh snapshots, run one worker and persist its session token."""

        try:
            self.write_snapshots(tenant)
        except WorkspaceError as exc:
            return WorkerResult.failure(exc)

        session_id = None if is_scheduled else self._db.get_session(tenant.folder)
        invocation = WorkerInvocation(
            prompt=prompt,
            tenant_id=tenant.folder,
            chat_target=tenant.jid,
            is_privileged=tenant.is_privileged,
            session_id=session_id,
            is_scheduled_task=is_scheduled,
        )
        result = await self._runner.run(tenant, invocation)
        if result.new_session_id and not is_scheduled:
            self._db.set_session(tenant.folder, result.new_session_id)
        return result

    async def run_scheduled(self, tenant: Tenant, prompt: str) -> WorkerResult:
        return await self.run_agent(tenant, prompt, is_scheduled=True)

    async def deliver_task_result(self, task: ScheduledTask, result: WorkerResult) -> None:
        if result.result:
            await self.send_message(task.chat_jid, result.result)

    async def send_message(self, jid: str, text: str) -> None:
        await self._channel.send_message(jid, text)

    async def refresh_groups(self) -> None:
        """Resync chat metadata and rewrite the privileged tenant's groups view."""

        await self._channel.sync_group_metadata()
        main = self._db.get_tenant(self._main_tenant_folder)
        if main is None or not main.is_privileged:
            return
        paths = self._workspace.ensure_workspace(main)
        write_groups_snapshot(paths.ipc_dir, self._db.list_available_groups(), self._clock())
