"""Per-tenant directory layout."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from nanoclaw.errors import WorkspaceError
from nanoclaw.models import Tenant, WorkspacePaths

LOGGER = logging.getLogger(__name__)

GLOBAL_FOLDER = "global"
IPC_ERRORS_FOLDER = "errors"

_FOLDER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
_RESERVED_FOLDERS = frozenset({GLOBAL_FOLDER, IPC_ERRORS_FOLDER})


def is_valid_folder(folder: str) -> bool:
    """Return True if ``folder`` is usable as a tenant identifier.

    A valid folder is a single path component, so one tenant's directories can
    never resolve inside another's.
    """
    return bool(_FOLDER_RE.match(folder)) and folder not in _RESERVED_FOLDERS


def folder_for_chat(name: str) -> str:
    """Derive a tenant folder from a chat name or identifier."""

    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")[:48]
    if not slug or slug in _RESERVED_FOLDERS:
        slug = f"chat-{slug}" if slug else "chat"
    return slug


class WorkspaceManager:
    """Creates and addresses the working, IPC and session directories of tenants.

    Layout::

        {groups_dir}/{folder}/              worker cwd
        {groups_dir}/{folder}/logs/         audit logs
        {groups_dir}/global/                memory shared by all tenants
        {data_dir}/ipc/{folder}/messages/   outgoing-message mailbox
        {data_dir}/ipc/{folder}/tasks/      task-operation mailbox
        {data_dir}/sessions/{folder}/.claude/
    """

    def __init__(self, groups_dir: Path, data_dir: Path) -> None:
        self._groups_dir = Path(groups_dir)
        self._data_dir = Path(data_dir)

    @property
    def ipc_root(self) -> Path:
        return self._data_dir / "ipc"

    @property
    def ipc_errors_dir(self) -> Path:
        return self.ipc_root / IPC_ERRORS_FOLDER

    def paths_for(self, folder: str) -> WorkspacePaths:
        """Resolve directories for ``folder`` without touching the filesystem."""

        if not is_valid_folder(folder):
            raise WorkspaceError(f"Invalid tenant folder: {folder!r}")
        working_dir = self._groups_dir / folder
        ipc_dir = self.ipc_root / folder
        return WorkspacePaths(
            working_dir=working_dir,
            global_dir=self._groups_dir / GLOBAL_FOLDER,
            ipc_dir=ipc_dir,
            messages_dir=ipc_dir / "messages",
            tasks_dir=ipc_dir / "tasks",
            session_dir=self._data_dir / "sessions" / folder / ".claude",
            logs_dir=working_dir / "logs",
        )

    def ensure_workspace(self, tenant: Tenant) -> WorkspacePaths:
        """Create every directory the tenant needs; existing ones are left alone.

        Raises:
            WorkspaceError: if a directory cannot be created.
        """
        paths = self.paths_for(tenant.folder)
        try:
            for directory in (
                paths.working_dir,
                paths.logs_dir,
                paths.global_dir,
                paths.messages_dir,
                paths.tasks_dir,
                paths.session_dir,
            ):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.error("Failed to prepare workspace for %s: %s", tenant.folder, exc)
            raise WorkspaceError(f"Failed to prepare workspace for {tenant.folder}: {exc}") from exc
        return paths

    def tenant_ipc_folders(self) -> list[str]:
        """List tenant folders that currently have an IPC directory."""

        if not self.ipc_root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.ipc_root.iterdir()
            if entry.is_dir() and entry.name != IPC_ERRORS_FOLDER
        )
