"""Host-side entry point for running a prompt in a group's sandbox.

Ties the pieces together for one invocation: publish the group's IPC
snapshots, build the request (resuming the group's last session), run it
through the ``SandboxRunner`` and remember the session id the agent hands
back.  Message routing and scheduling live outside Pincer and call
``Invoker.invoke``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Iterable

from pincer.config import GroupConfig, PincerConfig
from pincer.models import AvailableGroup, ExecutionRequest, ExecutionResult, ScheduledTask
from pincer.sandbox.allowlist import MountAllowlist
from pincer.sandbox.ipc import IpcNamespace, write_json_atomic
from pincer.sandbox.layout import WorkspaceLayout
from pincer.sandbox.mounts import MountResolver
from pincer.sandbox.runner import SandboxRunner

logger = logging.getLogger(__name__)


class SessionIndex:
    """Maps group folder → last session id, persisted as JSON."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._sessions: dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError):
            logger.warning("Could not read session index %s -- starting fresh", self._path)
            return
        if isinstance(data, dict):
            self._sessions = {str(k): str(v) for k, v in data.items() if v}

    def get(self, folder: str) -> str | None:
        return self._sessions.get(folder)

    def set(self, folder: str, session_id: str) -> None:
        self._sessions[folder] = session_id
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            write_json_atomic(self._path, self._sessions)
        except OSError as exc:
            logger.error("Failed to persist session index %s: %s", self._path, exc)


class Invoker:
    def __init__(
        self,
        config: PincerConfig,
        layout: WorkspaceLayout,
        runner: SandboxRunner,
        ipc: IpcNamespace,
        sessions: SessionIndex,
    ) -> None:
        self._config = config
        self._layout = layout
        self._runner = runner
        self._ipc = ipc
        self._sessions = sessions
        self._folder_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_config(
        cls,
        config: PincerConfig,
        project_root: Path,
        *,
        allowlist: MountAllowlist | None = None,
    ) -> Invoker:
        layout = config.layout(project_root)
        if allowlist is None:
            allowlist = MountAllowlist.load(config.sandbox.allowlist_path)
        resolver = MountResolver(layout, allowlist)
        runner = SandboxRunner(config.sandbox, layout, resolver)
        return cls(
            config,
            layout,
            runner,
            IpcNamespace(layout),
            SessionIndex(layout.session_index_path),
        )

    @property
    def runner(self) -> SandboxRunner:
        return self._runner

    @property
    def sessions(self) -> SessionIndex:
        return self._sessions

    async def invoke(
        self,
        group: GroupConfig,
        prompt: str,
        *,
        tasks: Iterable[ScheduledTask] = (),
        available_groups: Iterable[AvailableGroup] = (),
        registered_jids: set[str] | None = None,
        is_scheduled_task: bool = False,
        session_id: str | None = None,
    ) -> ExecutionResult:
        """Publish snapshots, run ``prompt`` for ``group``, track the session.

        Invocations for the same group run one at a time, so each one resumes
        the session the previous one left behind.
        """
        if registered_jids is None:
            registered_jids = self._config.registered_jids

        async with self._folder_locks[group.folder]:
            return await self._invoke_locked(
                group, prompt, tasks, available_groups, registered_jids, is_scheduled_task, session_id
            )

    async def _invoke_locked(
        self,
        group: GroupConfig,
        prompt: str,
        tasks: Iterable[ScheduledTask],
        available_groups: Iterable[AvailableGroup],
        registered_jids: set[str],
        is_scheduled_task: bool,
        session_id: str | None,
    ) -> ExecutionResult:
        try:
            self._ipc.publish_task_snapshot(group.folder, group.trust_tier, tasks)
            self._ipc.publish_group_snapshot(
                group.folder, group.trust_tier, available_groups, registered_jids
            )
        except OSError as exc:
            logger.error("Failed to publish IPC snapshots for %s: %s", group.folder, exc)
            return ExecutionResult.failure(f"Failed to publish IPC snapshots: {exc}")

        request = ExecutionRequest(
            prompt=prompt,
            session_id=session_id or self._sessions.get(group.folder),
            group_folder=group.folder,
            chat_jid=group.jid,
            is_main=group.is_main,
            is_scheduled_task=is_scheduled_task or None,
        )
        result = await self._runner.execute(group, request)
        if result.new_session_id:
            self._sessions.set(group.folder, result.new_session_id)
        return result
