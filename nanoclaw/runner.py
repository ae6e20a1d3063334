"""Worker subprocess lifecycle: spawn, feed, bound, time out, reap, parse."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Literal, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from nanoclaw.errors import (
    OrchestrationError,
    OutputParseError,
    SpawnError,
    WorkerExitError,
    WorkerTimeoutError,
    WorkspaceError,
)
from nanoclaw.models import Tenant, WorkerInvocation, WorkerResult, WorkspacePaths
from nanoclaw.workspace import WorkspaceManager

LOGGER = logging.getLogger(__name__)

OUTPUT_START_MARKER = "---NANOCLAW_OUTPUT_START---"
OUTPUT_END_MARKER = "---NANOCLAW_OUTPUT_END---"

_READ_CHUNK_BYTES = 64 * 1024
_LOG_TAIL_CHARS = 500
_ERROR_TAIL_CHARS = 200


class WorkerOutput(BaseModel):
    """The structured result a worker prints on stdout."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = Field(default=None, alias="newSessionId")
    error: str | None = None


class BoundedBuffer:
    """Accumulates stream bytes up to ``limit`` and drops the rest."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._data = bytearray()
        self.truncated = False

    def append(self, chunk: bytes) -> bool:
        """Append what fits; return True on the call that first overflows."""

        if self.truncated:
            return False
        remaining = self._limit - len(self._data)
        if len(chunk) > remaining:
            self._data.extend(chunk[:remaining])
            self.truncated = True
            return True
        self._data.extend(chunk)
        return False

    def __len__(self) -> int:
        return len(self._data)

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


def parse_worker_output(stdout: str) -> WorkerResult:
    """Extract the structured result from free-form worker stdout.

    The JSON between the sentinel markers wins; without markers the last
    non-empty line is used.

    Raises:
        OutputParseError: if no valid result can be recovered.
    """
    start = stdout.find(OUTPUT_START_MARKER)
    end = stdout.find(OUTPUT_END_MARKER, start + len(OUTPUT_START_MARKER)) if start != -1 else -1
    if start != -1 and end != -1:
        candidate = stdout[start + len(OUTPUT_START_MARKER) : end].strip()
    else:
        lines = [line for line in stdout.splitlines() if line.strip()]
        if not lines:
            raise OutputParseError("Failed to parse agent output: no output")
        candidate = lines[-1].strip()

    try:
        output = WorkerOutput.model_validate_json(candidate)
    except ValidationError as exc:
        raise OutputParseError(f"Failed to parse agent output: {exc}") from exc
    return WorkerResult(
        status=output.status,
        result=output.result,
        new_session_id=output.new_session_id,
        error=output.error,
    )


class AgentRunner:
    """Runs one worker process per invocation and returns its WorkerResult.

    Never raises for a single invocation's failure; every failure comes back as
    an error result with an ``error_kind``.
    """

    def __init__(
        self,
        workspace: WorkspaceManager,
        command: Sequence[str],
        timeout_seconds: float,
        max_output_bytes: int,
        project_root: Path | None = None,
        verbose_audit: bool = False,
        base_env: dict[str, str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._workspace = workspace
        self._command = list(command)
        self._timeout_seconds = timeout_seconds
        self._max_output_bytes = max_output_bytes
        self._project_root = project_root
        self._verbose_audit = verbose_audit
        self._base_env = base_env
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build_env(self, tenant: Tenant, paths: WorkspacePaths) -> dict[str, str]:
        """Environment for the worker: host credentials plus isolated paths."""

        env = dict(os.environ if self._base_env is None else self._base_env)
        env.update(
            {
                "WORKSPACE_GROUP": str(paths.working_dir.resolve()),
                "WORKSPACE_GLOBAL": str(paths.global_dir.resolve()),
                "WORKSPACE_IPC": str(paths.ipc_dir.resolve()),
                "CLAUDE_CONFIG_DIR": str(paths.session_dir.resolve()),
            }
        )
        env.pop("WORKSPACE_PROJECT", None)
        if tenant.is_privileged and self._project_root is not None:
            env["WORKSPACE_PROJECT"] = str(self._project_root.resolve())
        return env

    async def run(self, tenant: Tenant, invocation: WorkerInvocation) -> WorkerResult:
        """Run a worker to completion for ``tenant``."""

        started = time.monotonic()
        try:
            paths = self._workspace.ensure_workspace(tenant)
        except WorkspaceError as exc:
            return WorkerResult.failure(exc)

        LOGGER.info("Spawning agent subprocess for %s (privileged=%s)", tenant.folder, tenant.is_privileged)
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(tenant, paths),
                cwd=str(paths.working_dir),
            )
        except OSError as exc:
            LOGGER.error("Agent spawn error for %s: %s", tenant.folder, exc)
            return WorkerResult.failure(SpawnError(f"Agent spawn error: {exc}"))

        stdout = BoundedBuffer(self._max_output_bytes)
        stderr = BoundedBuffer(self._max_output_bytes)
        worker_log = LOGGER.getChild(tenant.folder)
        # The invocation settles only once stdin, both streams and the exit event have.
        tasks = [
            asyncio.create_task(self._feed_stdin(process, invocation)),
            asyncio.create_task(self._drain(process.stdout, stdout, tenant, "stdout")),
            asyncio.create_task(
                self._drain(process.stderr, stderr, tenant, "stderr", on_line=worker_log.debug)
            ),
            asyncio.create_task(process.wait()),
        ]

        timed_out = False
        try:
            _, pending = await asyncio.wait(tasks, timeout=self._timeout_seconds)
            if pending:
                timed_out = True
                LOGGER.error("Agent timeout for %s, killing pid %s", tenant.folder, process.pid)
                await self._abort(process, tasks)
        except asyncio.CancelledError:
            await self._abort(process, tasks)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        exit_code = process.returncode
        self._write_audit_log(
            tenant, invocation, paths, duration_ms, exit_code, stdout, stderr, timed_out
        )

        try:
            if timed_out:
                raise WorkerTimeoutError(self._timeout_seconds)
            for task in tasks:
                task.result()
            result = self._interpret(tenant, exit_code, stdout, stderr, duration_ms)
        except OrchestrationError as exc:
            result = WorkerResult.failure(exc)
        if stdout.truncated or stderr.truncated:
            result = replace(result, stdout_truncated=stdout.truncated, stderr_truncated=stderr.truncated)
        return result

    async def _feed_stdin(self, process: asyncio.subprocess.Process, invocation: WorkerInvocation) -> None:
        assert process.stdin is not None
        try:
            process.stdin.write(json.dumps(invocation.to_payload()).encode("utf-8") + b"\n")
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            LOGGER.warning("Agent closed stdin before reading its input: %s", exc)
        finally:
            process.stdin.close()

    async def _drain(
        self,
        stream: asyncio.StreamReader | None,
        buffer: BoundedBuffer,
        tenant: Tenant,
        name: str,
        on_line: Callable[[str], None] | None = None,
    ) -> None:
        """Read ``stream`` to EOF, keeping what fits in ``buffer``."""

        assert stream is not None
        partial = b""
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            if buffer.append(chunk):
                LOGGER.warning(
                    "Agent %s truncated for %s at %d bytes", name, tenant.folder, len(buffer)
                )
            if on_line is not None:
                *lines, partial = (partial + chunk).split(b"\n")
                for line in lines:
                    if line.strip():
                        on_line(line.decode("utf-8", errors="replace").rstrip())
                if len(partial) > _READ_CHUNK_BYTES:
                    on_line(partial.decode("utf-8", errors="replace"))
                    partial = b""
        if on_line is not None and partial.strip():
            on_line(partial.decode("utf-8", errors="replace").rstrip())

    async def _abort(self, process: asyncio.subprocess.Process, tasks: list[asyncio.Task]) -> None:
        """Kill the worker, wait for it to be reaped and stop reading its streams."""

        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _interpret(
        self,
        tenant: Tenant,
        exit_code: int | None,
        stdout: BoundedBuffer,
        stderr: BoundedBuffer,
        duration_ms: int,
    ) -> WorkerResult:
        if exit_code != 0:
            LOGGER.error(
                "Agent for %s exited with code %s after %dms: %s",
                tenant.folder,
                exit_code,
                duration_ms,
                stderr.text()[-_LOG_TAIL_CHARS:],
            )
            raise WorkerExitError(exit_code, stderr.text()[-_ERROR_TAIL_CHARS:])

        try:
            result = parse_worker_output(stdout.text())
        except OutputParseError:
            LOGGER.error(
                "Failed to parse agent output for %s: %s", tenant.folder, stdout.text()[-_LOG_TAIL_CHARS:]
            )
            raise
        LOGGER.info(
            "Agent completed for %s in %dms (status=%s, has_result=%s)",
            tenant.folder,
            duration_ms,
            result.status,
            bool(result.result),
        )
        return result

    def _write_audit_log(
        self,
        tenant: Tenant,
        invocation: WorkerInvocation,
        paths: WorkspacePaths,
        duration_ms: int,
        exit_code: int | None,
        stdout: BoundedBuffer,
        stderr: BoundedBuffer,
        timed_out: bool,
    ) -> Path | None:
        now = self._clock()
        lines = [
            "=== Agent Run Log ===",
            f"Timestamp: {now.isoformat()}",
            f"Tenant: {tenant.folder} ({tenant.name})",
            f"Privileged: {tenant.is_privileged}",
            f"Scheduled: {invocation.is_scheduled_task}",
            f"Duration: {duration_ms}ms",
            f"Exit Code: {exit_code}",
            f"Timed Out: {timed_out}",
            f"Stdout Truncated: {stdout.truncated}",
            f"Stderr Truncated: {stderr.truncated}",
            "",
        ]
        if self._verbose_audit:
            lines += [
                "=== Input ===",
                json.dumps(invocation.to_payload(), indent=2),
                "",
                f"=== Stderr{' (TRUNCATED)' if stderr.truncated else ''} ===",
                stderr.text(),
                "",
                f"=== Stdout{' (TRUNCATED)' if stdout.truncated else ''} ===",
                stdout.text(),
            ]
        else:
            lines += [
                "=== Input Summary ===",
                f"Prompt length: {len(invocation.prompt)} chars",
                f"Session ID: {invocation.session_id or 'new'}",
                "",
            ]
            if exit_code != 0:
                lines += [f"=== Stderr (last {_LOG_TAIL_CHARS} chars) ===", stderr.text()[-_LOG_TAIL_CHARS:], ""]

        stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%f")
        log_path = paths.logs_dir / f"agent-{stamp}.log"
        try:
            log_path.write_text("\n".join(lines), encoding="utf-8")
        except OSError as exc:
            LOGGER.error("Failed to write agent log %s: %s", log_path, exc)
            return None
        LOGGER.debug("Agent log written to %s (verbose=%s)", log_path, self._verbose_audit)
        return log_path
