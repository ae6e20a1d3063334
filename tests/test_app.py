import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from nanoclaw.app import Orchestrator
from nanoclaw.db import Database
from nanoclaw.errors import ErrorKind
from nanoclaw.mailbox import GROUPS_SNAPSHOT, TASKS_SNAPSHOT
from nanoclaw.models import Message, ScheduledTask, ScheduleType, TaskStatus, WorkerResult
from nanoclaw.workspace import WorkspaceManager

NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


class _Channel:
    def __init__(self, messages=()) -> None:
        self._messages = list(messages)
        self.send_message = AsyncMock()
        self.sync_group_metadata = AsyncMock()

    async def poll_messages(self):
        for message in self._messages:
            yield message


def _message(jid: str, text: str = "hello", name: str | None = None) -> Message:
    return Message(chat_jid=jid, sender_id="alice", text=text, timestamp=NOW, chat_name=name)


def _orchestrator(tmp_path, result=None, messages=(), **kwargs):
    db = Database(tmp_path / "nanoclaw.db")
    db.initialize()
    workspace = WorkspaceManager(groups_dir=tmp_path / "groups", data_dir=tmp_path / "data")
    runner = MagicMock()
    runner.run = AsyncMock(return_value=result or WorkerResult(status="success", result="hi back"))
    channel = _Channel(messages)
    orchestrator = Orchestrator(
        db=db,
        workspace=workspace,
        runner=runner,
        channel=channel,
        main_chat_jid="owner@chat",
        clock=lambda: NOW,
        **kwargs,
    )
    return orchestrator, db, workspace, runner, channel


class TestTenantRegistration:
    def test_main_chat_becomes_privileged_tenant(self, tmp_path):
        orchestrator, db, *_ = _orchestrator(tmp_path)

        tenant = orchestrator.ensure_tenant(_message("owner@chat", name="Owner"))

        assert tenant.folder == "main"
        assert tenant.is_privileged
        assert db.get_tenant_by_jid("owner@chat") == tenant

    def test_other_chats_get_slugged_unprivileged_folders(self, tmp_path):
        orchestrator, *_ = _orchestrator(tmp_path)

        family = orchestrator.ensure_tenant(_message("family@chat", name="The Family!"))
        twin = orchestrator.ensure_tenant(_message("family2@chat", name="The Family"))
        named_main = orchestrator.ensure_tenant(_message("x@chat", name="Main"))

        assert family.folder == "the-family"
        assert twin.folder == "the-family-2"
        assert named_main.folder == "main-2"
        assert not any(t.is_privileged for t in (family, twin, named_main))

    def test_existing_tenant_is_reused(self, tmp_path):
        orchestrator, db, *_ = _orchestrator(tmp_path)

        first = orchestrator.ensure_tenant(_message("family@chat", name="Family"))
        second = orchestrator.ensure_tenant(_message("family@chat", name="Renamed"))

        assert first == second
        assert len(db.list_tenants()) == 1


class TestInbound:
    @pytest.mark.asyncio
    async def test_reply_is_sent_and_session_persisted(self, tmp_path):
        result = WorkerResult(status="success", result="hi back", new_session_id="s-1")
        orchestrator, db, _, runner, channel = _orchestrator(tmp_path, result=result)

        await orchestrator.handle_inbound(_message("family@chat", "first", name="Family"))
        await orchestrator.handle_inbound(_message("family@chat", "second", name="Family"))

        channel.send_message.assert_awaited_with("family@chat", "hi back")
        assert db.get_session("family") == "s-1"
        first_call, second_call = runner.run.await_args_list
        assert first_call.args[1].session_id is None
        assert second_call.args[1].session_id == "s-1"
        assert second_call.args[1].prompt == "second"
        assert second_call.args[1].is_privileged is False

    @pytest.mark.asyncio
    async def test_failed_run_sends_nothing(self, tmp_path):
        failure = WorkerResult(status="error", error="Agent timed out after 300s", error_kind=ErrorKind.TIMEOUT)
        orchestrator, db, _, _, channel = _orchestrator(tmp_path, result=failure)

        result = await orchestrator.handle_inbound(_message("family@chat", name="Family"))

        assert result == failure
        channel.send_message.assert_not_awaited()
        assert db.get_session("family") is None

    @pytest.mark.asyncio
    async def test_runner_exception_is_contained(self, tmp_path):
        orchestrator, _, _, runner, channel = _orchestrator(tmp_path)
        runner.run.side_effect = RuntimeError("unexpected")

        assert await orchestrator.handle_inbound(_message("family@chat")) is None
        channel.send_message.assert_not_awaited()


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_snapshots_are_filtered_per_tenant(self, tmp_path):
        orchestrator, db, workspace, *_ = _orchestrator(tmp_path)
        family = orchestrator.ensure_tenant(_message("family@chat", name="Family"))
        main = orchestrator.ensure_tenant(_message("owner@chat", name="Owner"))
        db.upsert_chat("family@chat", "Family", NOW)
        db.upsert_chat("owner@chat", "Owner", NOW)
        for task_id, tenant in (("t-family", family), ("t-main", main)):
            db.create_task(
                ScheduledTask(
                    id=task_id,
                    tenant_folder=tenant.folder,
                    chat_jid=tenant.jid,
                    prompt="p",
                    schedule_type=ScheduleType.INTERVAL,
                    schedule_value="60",
                    status=TaskStatus.ACTIVE,
                    next_run=NOW,
                )
            )

        orchestrator.write_snapshots(family)
        orchestrator.write_snapshots(main)

        family_ipc = workspace.paths_for("family").ipc_dir
        main_ipc = workspace.paths_for("main").ipc_dir
        family_tasks = json.loads((family_ipc / TASKS_SNAPSHOT).read_text())
        main_tasks = json.loads((main_ipc / TASKS_SNAPSHOT).read_text())
        assert [t["id"] for t in family_tasks] == ["t-family"]
        assert sorted(t["id"] for t in main_tasks) == ["t-family", "t-main"]

        family_groups = json.loads((family_ipc / GROUPS_SNAPSHOT).read_text())
        main_groups = json.loads((main_ipc / GROUPS_SNAPSHOT).read_text())
        assert family_groups["groups"] == []
        assert {g["jid"] for g in main_groups["groups"]} == {"family@chat", "owner@chat"}
        assert all(g["isRegistered"] for g in main_groups["groups"])

    @pytest.mark.asyncio
    async def test_refresh_groups_rewrites_main_snapshot(self, tmp_path):
        orchestrator, db, workspace, _, channel = _orchestrator(tmp_path)
        orchestrator.ensure_tenant(_message("owner@chat", name="Owner"))
        db.upsert_chat("stranger@chat", "Stranger", NOW)

        await orchestrator.refresh_groups()

        channel.sync_group_metadata.assert_awaited_once()
        snapshot = json.loads((workspace.paths_for("main").ipc_dir / GROUPS_SNAPSHOT).read_text())
        assert snapshot["groups"] == [
            {"jid": "stranger@chat", "name": "Stranger", "lastActivity": NOW.isoformat(), "isRegistered": False}
        ]
        assert snapshot["lastSync"] == NOW.isoformat()


class TestScheduledRuns:
    @pytest.mark.asyncio
    async def test_scheduled_run_uses_fresh_session(self, tmp_path):
        result = WorkerResult(status="success", result="report", new_session_id="s-task")
        orchestrator, db, _, runner, _ = _orchestrator(tmp_path, result=result)
        tenant = orchestrator.ensure_tenant(_message("family@chat", name="Family"))
        db.set_session("family", "s-chat")

        await orchestrator.run_scheduled(tenant, "daily report")

        invocation = runner.run.await_args.args[1]
        assert invocation.session_id is None
        assert invocation.is_scheduled_task is True
        assert db.get_session("family") == "s-chat"

    @pytest.mark.asyncio
    async def test_task_result_is_delivered_to_task_chat(self, tmp_path):
        orchestrator, _, _, _, channel = _orchestrator(tmp_path)
        task = MagicMock(chat_jid="family@chat")

        await orchestrator.deliver_task_result(task, WorkerResult(status="success", result="done"))

        channel.send_message.assert_awaited_once_with("family@chat", "done")


@pytest.mark.asyncio
async def test_run_processes_messages_and_shuts_down(tmp_path):
    messages = [_message("owner@chat", "status?", name="Owner"), _message("family@chat", "hi", name="Family")]
    orchestrator, db, _, runner, channel = _orchestrator(
        tmp_path,
        messages=messages,
        scheduler_poll_interval_seconds=0.01,
        ipc_poll_interval_seconds=0.01,
    )

    await asyncio.wait_for(orchestrator.run(), timeout=5)

    assert runner.run.await_count == 2
    assert sorted(call.args[0] for call in channel.send_message.await_args_list) == ["family@chat", "owner@chat"]
    assert {t.folder for t in db.list_tenants()} == {"main", "family"}
