"""SandboxRunner -- runs one agent invocation inside the sandbox.

Per invocation:
1. Check the request's identity claims against the registered group.
2. Resolve the mount set (fail-closed on any policy violation).
3. Build the sandbox settings (write allowlist) and wrap the agent command.
4. Build the agent environment and spawn the subprocess in the group folder.
5. Feed the request on stdin and close it.
6. Drain stdout/stderr into bounded buffers while racing the wall-clock
   timeout; on expiry, SIGKILL the whole process group.
7. Decode the response frame from stdout.
8. Write the run log in the background.

``execute`` never raises for policy, spawn, timeout, exit-code or decode
failures: each becomes an error ``ExecutionResult``.  Runs for the same
group are serialized; different groups run concurrently.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import signal
import time
from collections import defaultdict
from typing import TYPE_CHECKING

from pincer.models import ExecutionRequest, ExecutionResult, TrustTier
from pincer.sandbox.audit import RunLogWriter, RunRecord
from pincer.sandbox.env_scrub import build_sandbox_env
from pincer.sandbox.errors import OutputDecodeError, PolicyViolation, SandboxSetupError
from pincer.sandbox.protocol import decode_output
from pincer.sandbox.runtime import SandboxRuntime, build_sandbox_settings

if TYPE_CHECKING:
    from pincer.config import GroupConfig
    from pincer.sandbox.config import SandboxConfig
    from pincer.sandbox.layout import WorkspaceLayout
    from pincer.sandbox.mounts import MountResolver

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_KILL_WAIT_SECONDS = 5.0
_ERROR_TAIL = 200


class RunState(str, enum.Enum):
    """Lifecycle of one invocation.  Every terminal state yields one result."""

    BUILDING = "building"
    SPAWNED = "spawned"
    POLICY_REJECTED = "policy_rejected"
    SPAWN_FAILED = "spawn_failed"
    TIMED_OUT = "timed_out"
    COMPLETED = "completed"
    DECODED = "decoded"
    DECODE_FAILED = "decode_failed"


class BoundedBuffer:
    """Accumulates bytes up to ``limit``; the rest is dropped and flagged."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._chunks: list[bytes] = []
        self._size = 0
        self.truncated = False

    @property
    def size(self) -> int:
        return self._size

    def feed(self, data: bytes) -> None:
        if not data:
            return
        if self.truncated:
            return
        remaining = self._limit - self._size
        if len(data) > remaining:
            if remaining > 0:
                self._chunks.append(data[:remaining])
                self._size += remaining
            self.truncated = True
            return
        self._chunks.append(data)
        self._size += len(data)

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


class SandboxRunner:
    """Spawns and supervises sandboxed agent subprocesses."""

    def __init__(
        self,
        config: SandboxConfig,
        layout: WorkspaceLayout,
        resolver: MountResolver,
        *,
        runtime: SandboxRuntime | None = None,
        run_logs: RunLogWriter | None = None,
    ) -> None:
        self._config = config
        self._layout = layout
        self._resolver = resolver
        self._runtime = runtime or SandboxRuntime(config)
        self._run_logs = run_logs or RunLogWriter(
            verbose=config.verbose_run_logs,
            error_tail=config.run_log_error_tail,
        )
        # One invocation per group at a time.
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pending_logs: set[asyncio.Task] = set()

    # ── Public API ────────────────────────────────────────────────────────────

    async def execute(self, group: GroupConfig, request: ExecutionRequest) -> ExecutionResult:
        """Run ``request`` for ``group`` and return exactly one result."""
        async with self._locks[group.folder]:
            record = RunRecord(
                group_name=group.name,
                folder=group.folder,
                trust_tier=group.trust_tier.value,
                request=request,
            )
            started = time.monotonic()
            try:
                result = await self._run(group, request, record)
            except Exception as exc:
                logger.exception("Unexpected failure running agent for %s", group.folder)
                record.state = RunState.SPAWN_FAILED.value
                result = ExecutionResult.failure(f"Agent run failed: {exc}")
            record.duration_ms = int((time.monotonic() - started) * 1000)
            record.failed = not result.ok
            self._schedule_run_log(record)
            return result

    async def flush_run_logs(self) -> None:
        """Wait for run logs still being written."""
        if self._pending_logs:
            await asyncio.gather(*list(self._pending_logs), return_exceptions=True)

    # ── Invocation ────────────────────────────────────────────────────────────

    async def _run(
        self, group: GroupConfig, request: ExecutionRequest, record: RunRecord
    ) -> ExecutionResult:
        folder = group.folder
        is_main = group.trust_tier == TrustTier.PRIMARY

        if request.group_folder != folder or request.is_main != is_main:
            record.state = RunState.POLICY_REJECTED.value
            logger.error(
                "Identity mismatch for %s: request claims folder=%s is_main=%s",
                folder,
                request.group_folder,
                request.is_main,
            )
            return ExecutionResult.failure("Request identity does not match the target group")

        container = group.container_config
        try:
            mounts = self._resolver.resolve_mounts(
                folder,
                group.trust_tier,
                container.additional_mounts,
                allow_read_write_extras=container.allow_read_write_extras,
            )
        except PolicyViolation as exc:
            record.state = RunState.POLICY_REJECTED.value
            logger.error("Mount policy violation for %s: %s (path=%s)", folder, exc, exc.path)
            return ExecutionResult.failure(f"Mount policy violation: {exc}")
        except OSError as exc:
            record.state = RunState.SPAWN_FAILED.value
            logger.error("Failed to prepare workspace for %s: %s", folder, exc)
            return ExecutionResult.failure(f"Failed to prepare workspace: {exc}")
        record.mounts = mounts

        logger.debug(
            "Mount configuration for %s: %s", folder, [m.describe() for m in mounts]
        )

        settings = build_sandbox_settings(mounts, self._config.network_allowed_domains)
        try:
            command = self._runtime.wrap_command(
                self._runtime.agent_command(),
                settings,
                self._layout.sandbox_dir(folder),
            )
        except SandboxSetupError as exc:
            record.state = RunState.SPAWN_FAILED.value
            logger.error("Failed to build sandbox command for %s: %s", folder, exc)
            return ExecutionResult.failure(f"Sandbox setup failed: {exc}")
        record.command = command

        env = build_sandbox_env(self._config, self._layout, folder, is_main=is_main)
        timeout = container.timeout or self._config.timeout_seconds

        logger.info(
            "Spawning agent for %s (mounts=%d, main=%s, timeout=%ss)",
            group.name,
            len(mounts),
            is_main,
            timeout,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self._layout.group_dir(folder)),
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            record.state = RunState.SPAWN_FAILED.value
            logger.error("Agent spawn error for %s: %s", folder, exc)
            return ExecutionResult.failure(f"Agent spawn error: {exc}")
        record.state = RunState.SPAWNED.value

        stdout_buf = BoundedBuffer(self._config.max_output_bytes)
        stderr_buf = BoundedBuffer(self._config.max_output_bytes)
        timed_out = False
        try:
            await asyncio.wait_for(
                self._supervise(proc, request, stdout_buf, stderr_buf, folder),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.error("Agent timeout for %s after %ss, killing", group.name, timeout)
            await _kill_process_group(proc)
        finally:
            record.stdout = stdout_buf.text()
            record.stderr = stderr_buf.text()
            record.stdout_truncated = stdout_buf.truncated
            record.stderr_truncated = stderr_buf.truncated

        record.exit_code = proc.returncode
        record.signal = _signal_name(proc.returncode)

        if timed_out:
            record.state = RunState.TIMED_OUT.value
            return ExecutionResult.failure(f"Agent timed out after {timeout:g}s")

        record.state = RunState.COMPLETED.value
        if proc.returncode != 0:
            logger.error(
                "Agent for %s exited with code %s (signal=%s): %s",
                group.name,
                proc.returncode,
                record.signal,
                record.stderr[-self._config.run_log_error_tail :],
            )
            suffix = f" (signal {record.signal})" if record.signal else ""
            return ExecutionResult.failure(
                f"Agent exited with code {proc.returncode}{suffix}: {record.stderr[-_ERROR_TAIL:]}"
            )

        try:
            result = decode_output(record.stdout)
        except OutputDecodeError as exc:
            record.state = RunState.DECODE_FAILED.value
            logger.error("Failed to parse agent output for %s: %s", group.name, exc)
            return ExecutionResult.failure(
                f"Failed to parse agent output: {exc}; output tail: {record.stdout[-_ERROR_TAIL:]!r}"
            )

        record.state = RunState.DECODED.value
        logger.info(
            "Agent completed for %s (status=%s, has_result=%s)",
            group.name,
            result.status,
            bool(result.result),
        )
        return result

    async def _supervise(
        self,
        proc: asyncio.subprocess.Process,
        request: ExecutionRequest,
        stdout_buf: BoundedBuffer,
        stderr_buf: BoundedBuffer,
        folder: str,
    ) -> None:
        """Feed stdin, drain both outputs, then wait for exit."""
        await asyncio.gather(
            _feed_stdin(proc, request.to_wire().encode()),
            _drain(proc.stdout, stdout_buf, folder, "stdout"),
            _drain(proc.stderr, stderr_buf, folder, "stderr", echo=True),
        )
        await proc.wait()

    # ── Run logs ──────────────────────────────────────────────────────────────

    def _schedule_run_log(self, record: RunRecord) -> None:
        try:
            logs_dir = self._layout.logs_dir(record.folder)
        except ValueError:
            return
        task = asyncio.create_task(asyncio.to_thread(self._run_logs.write, logs_dir, record))
        self._pending_logs.add(task)
        task.add_done_callback(self._pending_logs.discard)


async def _feed_stdin(proc: asyncio.subprocess.Process, payload: bytes) -> None:
    stdin = proc.stdin
    if stdin is None:
        return
    try:
        stdin.write(payload)
        await stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Agent closed stdin before reading the request")
    finally:
        stdin.close()


async def _drain(
    stream: asyncio.StreamReader | None,
    buffer: BoundedBuffer,
    folder: str,
    name: str,
    *,
    echo: bool = False,
) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        if echo:
            for line in chunk.decode("utf-8", errors="replace").splitlines():
                if line.strip():
                    logger.debug("[%s] %s", folder, line)
        was_truncated = buffer.truncated
        buffer.feed(chunk)
        if buffer.truncated and not was_truncated:
            logger.warning(
                "Agent %s for %s truncated at %d bytes", name, folder, buffer.size
            )


async def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.kill()
    try:
        await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("Agent process %d did not exit after SIGKILL", proc.pid)


def _signal_name(returncode: int | None) -> str | None:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return str(-returncode)
