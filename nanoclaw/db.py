"""SQLite persistence layer."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from nanoclaw.models import AvailableGroup, ScheduledTask, ScheduleType, TaskRun, TaskStatus, Tenant

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management.

    The host process is the only writer.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tenants (
                folder TEXT PRIMARY KEY,
                jid TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                is_privileged INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_single_privileged_tenant
                ON tenants(is_privileged) WHERE is_privileged = 1;

            CREATE TABLE IF NOT EXISTS chats (
                jid TEXT PRIMARY KEY,
                name TEXT,
                last_activity TEXT
            );

            CREATE TABLE IF NOT EXISTS sessions (
                folder TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id TEXT PRIMARY KEY,
                tenant_folder TEXT NOT NULL,
                chat_jid TEXT NOT NULL,
                prompt TEXT NOT NULL,
                schedule_type TEXT NOT NULL,
                schedule_value TEXT NOT NULL,
                status TEXT NOT NULL,
                next_run TEXT,
                last_run TEXT,
                last_result TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(tenant_folder) REFERENCES tenants(folder)
            );

            CREATE INDEX IF NOT EXISTS idx_tasks_due ON scheduled_tasks(status, next_run);

            CREATE TABLE IF NOT EXISTS task_run_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id TEXT NOT NULL,
                run_at TEXT NOT NULL,
                duration_ms INTEGER NOT NULL,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                FOREIGN KEY(task_id) REFERENCES scheduled_tasks(id)
            );
            """
        )

    # Tenants

    def register_tenant(self, tenant: Tenant) -> Tenant:
        """Insert a tenant; raises sqlite3.IntegrityError on a duplicate folder, jid or second privileged tenant."""

        added_at = tenant.added_at or datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO tenants(folder, jid, name, is_privileged, created_at) VALUES (?, ?, ?, ?, ?)",
                (tenant.folder, tenant.jid, tenant.name, int(tenant.is_privileged), _iso(added_at)),
            )
        return Tenant(
            folder=tenant.folder,
            jid=tenant.jid,
            name=tenant.name,
            is_privileged=tenant.is_privileged,
            added_at=added_at,
        )

    def get_tenant(self, folder: str) -> Tenant | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenants WHERE folder = ?", (folder,)).fetchone()
        return _row_to_tenant(row) if row else None

    def get_tenant_by_jid(self, jid: str) -> Tenant | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenants WHERE jid = ?", (jid,)).fetchone()
        return _row_to_tenant(row) if row else None

    def list_tenants(self) -> list[Tenant]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM tenants ORDER BY folder").fetchall()
        return [_row_to_tenant(row) for row in rows]

    # Chats

    def upsert_chat(self, jid: str, name: str | None = None, last_activity: datetime | None = None) -> None:
        activity = _iso(last_activity) if last_activity else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chats(jid, name, last_activity)
                VALUES(?, ?, ?)
                ON CONFLICT(jid) DO UPDATE SET
                    name=COALESCE(excluded.name, chats.name),
                    last_activity=NULLIF(
                        MAX(COALESCE(excluded.last_activity, ''), COALESCE(chats.last_activity, '')), ''
                    )
                """,
                (jid, name, activity),
            )

    def list_available_groups(self) -> list[AvailableGroup]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT c.jid, c.name, c.last_activity, t.folder IS NOT NULL AS is_registered
                FROM chats c
                LEFT JOIN tenants t ON t.jid = c.jid
                ORDER BY c.last_activity DESC
                """
            ).fetchall()
        return [
            AvailableGroup(
                jid=row["jid"],
                name=row["name"] or row["jid"],
                last_activity=_parse(row["last_activity"]),
                is_registered=bool(row["is_registered"]),
            )
            for row in rows
        ]

    # Sessions

    def get_session(self, folder: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT session_id FROM sessions WHERE folder = ?", (folder,)).fetchone()
        return row["session_id"] if row else None

    def set_session(self, folder: str, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sessions(folder, session_id, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(folder) DO UPDATE SET session_id=excluded.session_id, updated_at=excluded.updated_at
                """,
                (folder, session_id, _utc_now_iso()),
            )

    def clear_session(self, folder: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE folder = ?", (folder,))

    # Scheduled tasks

    def create_task(self, task: ScheduledTask) -> None:
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scheduled_tasks(
                    id, tenant_folder, chat_jid, prompt, schedule_type, schedule_value,
                    status, next_run, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.tenant_folder,
                    task.chat_jid,
                    task.prompt,
                    task.schedule_type.value,
                    task.schedule_value,
                    task.status.value,
                    _iso(task.next_run) if task.next_run else None,
                    _iso(task.created_at) if task.created_at else now,
                    now,
                ),
            )

    def get_task(self, task_id: str) -> ScheduledTask | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def list_tasks(self) -> list[ScheduledTask]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM scheduled_tasks ORDER BY created_at, id").fetchall()
        return [_row_to_task(row) for row in rows]

    def get_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM scheduled_tasks
                WHERE status = 'active' AND next_run IS NOT NULL AND next_run <= ?
                ORDER BY next_run ASC
                """,
                (_iso(now),),
            ).fetchall()
        return [_row_to_task(row) for row in rows]

    def set_task_status(self, task_id: str, status: TaskStatus) -> None:
        with self._connect() as conn:
            if status is TaskStatus.CANCELLED:
                conn.execute(
                    "UPDATE scheduled_tasks SET status = ?, next_run = NULL, updated_at = ? WHERE id = ?",
                    (status.value, _utc_now_iso(), task_id),
                )
            else:
                conn.execute(
                    "UPDATE scheduled_tasks SET status = ?, updated_at = ? WHERE id = ?",
                    (status.value, _utc_now_iso(), task_id),
                )

    def record_task_run(self, run: TaskRun, next_run: datetime | None) -> None:
        """Log a run and advance the task; a task with no next run is retired.

        A task cancelled while it was running stays cancelled with no next run.
        """

        summary = run.result if run.status == "success" else f"Error: {run.error}"
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO task_run_logs(task_id, run_at, duration_ms, status, result, error)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run.task_id, _iso(run.run_at), run.duration_ms, run.status, run.result, run.error),
            )
            conn.execute(
                """
                UPDATE scheduled_tasks
                SET next_run = CASE WHEN status = 'cancelled' THEN NULL ELSE ? END,
                    last_run = ?,
                    last_result = ?,
                    status = CASE WHEN ? IS NULL THEN 'cancelled' ELSE status END,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    _iso(next_run) if next_run else None,
                    _iso(run.run_at),
                    summary[:500] if summary else None,
                    _iso(next_run) if next_run else None,
                    _utc_now_iso(),
                    run.task_id,
                ),
            )

    def list_task_runs(self, task_id: str) -> list[TaskRun]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM task_run_logs WHERE task_id = ? ORDER BY id ASC", (task_id,)
            ).fetchall()
        return [
            TaskRun(
                task_id=row["task_id"],
                run_at=_parse(row["run_at"]),  # type: ignore[arg-type]
                duration_ms=row["duration_ms"],
                status=row["status"],
                result=row["result"],
                error=row["error"],
            )
            for row in rows
        ]


def _row_to_tenant(row: sqlite3.Row) -> Tenant:
    return Tenant(
        folder=row["folder"],
        jid=row["jid"],
        name=row["name"],
        is_privileged=bool(row["is_privileged"]),
        added_at=_parse(row["created_at"]),
    )


def _row_to_task(row: sqlite3.Row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        tenant_folder=row["tenant_folder"],
        chat_jid=row["chat_jid"],
        prompt=row["prompt"],
        schedule_type=ScheduleType(row["schedule_type"]),
        schedule_value=row["schedule_value"],
        status=TaskStatus(row["status"]),
        next_run=_parse(row["next_run"]),
        last_run=_parse(row["last_run"]),
        last_result=row["last_result"],
        created_at=_parse(row["created_at"]),
    )


def _iso(value: datetime) -> str:
    # Fixed precision keeps lexical order equal to chronological order.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _utc_now_iso() -> str:
    return _iso(datetime.now(timezone.utc))
