"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

from nanoclaw.app import Orchestrator
from nanoclaw.authorization import AuthorizationPolicy
from nanoclaw.channel import ConsoleChannel
from nanoclaw.config import load_settings, runner_argv, verbose_audit
from nanoclaw.db import Database
from nanoclaw.runner import AgentRunner
from nanoclaw.workspace import WorkspaceManager

LOGGER = logging.getLogger(__name__)


async def run() -> None:
    """Initialize app layers and start processing loop."""

    settings = load_settings()
    logging.basicConfig(level=logging.DEBUG if verbose_audit(settings) else settings.log_level)

    db = Database(settings.database_path)
    db.initialize()

    workspace = WorkspaceManager(groups_dir=settings.groups_dir, data_dir=settings.data_dir)
    runner = AgentRunner(
        workspace=workspace,
        command=runner_argv(settings),
        timeout_seconds=settings.agent_timeout_seconds,
        max_output_bytes=settings.agent_max_output_size,
        project_root=settings.project_root,
        verbose_audit=verbose_audit(settings),
    )

    orchestrator = Orchestrator(
        db=db,
        workspace=workspace,
        runner=runner,
        channel=ConsoleChannel(),
        policy=AuthorizationPolicy(),
        main_tenant_folder=settings.main_tenant_folder,
        main_chat_jid=settings.main_chat_jid,
        scheduler_poll_interval_seconds=settings.scheduler_poll_interval_seconds,
        ipc_poll_interval_seconds=settings.ipc_poll_interval_seconds,
        timezone_name=settings.timezone,
    )

    LOGGER.info("NanoClaw host started (data=%s, groups=%s)", settings.data_dir, settings.groups_dir)
    try:
        await orchestrator.run()
    finally:
        LOGGER.info("NanoClaw host shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
