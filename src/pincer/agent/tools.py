"""Workspace tools exposed to the agent backend inside the sandbox.

Tools:
- read_file / write_file / list_files: path-guarded file access
- bash: shell command in the group folder with a timeout and bounded output
- list_tasks / list_available_groups: read the host-published IPC snapshots

Every file tool resolves its path through the path guard first and refuses
the operation when the guard rejects it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from pincer.agent.path_guard import PathDenied, resolve_path
from pincer.sandbox.ipc import GROUPS_SNAPSHOT, TASKS_SNAPSHOT

logger = logging.getLogger(__name__)

DEFAULT_SHELL_TIMEOUT = 60.0
DEFAULT_SHELL_MAX_OUTPUT = 8_000
DEFAULT_READ_MAX_CHARS = 200_000


# ── Tool Parameter Models ────────────────────────────────────────────────────


class ReadFileParams(BaseModel):
    path: str = Field(description="Path to the file (relative to the group folder) or absolute")


class WriteFileParams(BaseModel):
    path: str = Field(description="Path to the file (relative to the group folder) or absolute")
    content: str = Field(description="File contents")


class ListFilesParams(BaseModel):
    path: str = Field(default=".", description="Directory path (relative to the group folder) or absolute")


class BashParams(BaseModel):
    command: str = Field(description="Bash command to run")


class NoParams(BaseModel):
    """No parameters needed."""

    pass


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    params: type[BaseModel]
    handler: Callable[[Any], Awaitable[str]]

    async def invoke(self, arguments: dict) -> str:
        """Validate ``arguments`` and run the tool; guard refusals become text."""
        params = self.params.model_validate(arguments)
        try:
            return await self.handler(params)
        except PathDenied as exc:
            logger.warning("Tool %s refused: %s", self.name, exc)
            return f"Error: {exc}"


class WorkspaceTools:
    """Tool implementations bound to one group's directories."""

    def __init__(
        self,
        group_dir: Path,
        roots: list[Path],
        ipc_dir: Path | None = None,
        *,
        shell_timeout: float = DEFAULT_SHELL_TIMEOUT,
        shell_max_output: int = DEFAULT_SHELL_MAX_OUTPUT,
        read_max_chars: int = DEFAULT_READ_MAX_CHARS,
    ) -> None:
        self.group_dir = group_dir
        self.roots = roots
        self.ipc_dir = ipc_dir
        self._shell_timeout = shell_timeout
        self._shell_max_output = shell_max_output
        self._read_max_chars = read_max_chars

    def _resolve(self, path: str) -> Path:
        return resolve_path(path, self.roots, self.group_dir)

    async def read_file(self, params: ReadFileParams) -> str:
        file_path = self._resolve(params.path)
        if not file_path.is_file():
            return f"Not a file: {file_path}"
        content = file_path.read_text(errors="replace")
        return content[: self._read_max_chars]

    async def write_file(self, params: WriteFileParams) -> str:
        file_path = self._resolve(params.path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(params.content)
        return f"Wrote {file_path}"

    async def list_files(self, params: ListFilesParams) -> str:
        dir_path = self._resolve(params.path)
        if not dir_path.is_dir():
            return f"Not a directory: {dir_path}"
        return "\n".join(sorted(entry.name for entry in dir_path.iterdir()))

    async def bash(self, params: BashParams) -> str:
        # Stays in the agent's process group so the host timeout kill reaches it.
        proc = await asyncio.create_subprocess_exec(
            "/bin/bash",
            "-c",
            params.command,
            cwd=str(self.group_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=self._shell_timeout
            )
            exit_status: int | str = proc.returncode if proc.returncode is not None else "null"
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            stdout_bytes, stderr_bytes = b"", b""
            exit_status = "timeout"
        limit = self._shell_max_output
        stdout = (stdout_bytes or b"").decode(errors="replace")[:limit]
        stderr = (stderr_bytes or b"").decode(errors="replace")[:limit]
        return f"exit={exit_status}\nstdout:\n{stdout}\nstderr:\n{stderr}".strip()

    async def list_tasks(self, params: NoParams) -> str:
        return self._read_snapshot(TASKS_SNAPSHOT, default=[])

    async def list_available_groups(self, params: NoParams) -> str:
        return self._read_snapshot(GROUPS_SNAPSHOT, default={"groups": []})

    def _read_snapshot(self, name: str, default: object) -> str:
        if self.ipc_dir is None:
            return json.dumps(default)
        path = self.ipc_dir / name
        if not path.is_file():
            return json.dumps(default)
        return path.read_text()

    def definitions(self) -> list[ToolDefinition]:
        return [
            ToolDefinition(
                "bash",
                "Run a bash command in the group folder. Commands run inside the sandbox.",
                BashParams,
                self.bash,
            ),
            ToolDefinition("read_file", "Read a text file from the workspace.", ReadFileParams, self.read_file),
            ToolDefinition("write_file", "Write a text file to the workspace.", WriteFileParams, self.write_file),
            ToolDefinition("list_files", "List files in a directory.", ListFilesParams, self.list_files),
            ToolDefinition(
                "list_tasks",
                "List the scheduled tasks visible to this group.",
                NoParams,
                self.list_tasks,
            ),
            ToolDefinition(
                "list_available_groups",
                "List groups that can be activated (main group only; empty otherwise).",
                NoParams,
                self.list_available_groups,
            ),
        ]
