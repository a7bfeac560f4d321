"""Host-side workspace layout.

Every per-group host path is derived here and nowhere else::

    <project>/groups/<folder>/            group namespace (agent cwd)
    <project>/groups/<folder>/logs/       per-invocation run logs
    <project>/groups/global/              shared memory (read-only for standard groups)
    <project>/data/sessions/<folder>/     agent session storage
    <project>/data/ipc/<folder>/          IPC namespace (messages/, tasks/, snapshots)
    <project>/data/sandbox/<folder>/      generated sandbox settings
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

GLOBAL_FOLDER = "global"

_FOLDER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]{0,63}$")


def validate_group_folder(folder: str) -> str:
    """Reject folder names that could address anything but one group directory."""
    value = str(folder or "")
    if value == GLOBAL_FOLDER:
        raise ValueError(f"group folder name is reserved: {folder!r}")
    if not _FOLDER_PATTERN.fullmatch(value):
        raise ValueError(f"invalid group folder: {folder!r}")
    return value


@dataclass(frozen=True)
class WorkspaceLayout:
    project_root: Path
    groups_dir: Path
    data_dir: Path

    @classmethod
    def from_root(
        cls,
        project_root: Path,
        groups_dir: str = "groups",
        data_dir: str = "data",
    ) -> WorkspaceLayout:
        root = Path(project_root).resolve()
        return cls(
            project_root=root,
            groups_dir=(root / groups_dir).resolve(),
            data_dir=(root / data_dir).resolve(),
        )

    @property
    def global_dir(self) -> Path:
        return self.groups_dir / GLOBAL_FOLDER

    def group_dir(self, folder: str) -> Path:
        return self.groups_dir / validate_group_folder(folder)

    def logs_dir(self, folder: str) -> Path:
        return self.group_dir(folder) / "logs"

    def sessions_dir(self, folder: str) -> Path:
        return self.data_dir / "sessions" / validate_group_folder(folder)

    def ipc_dir(self, folder: str) -> Path:
        return self.data_dir / "ipc" / validate_group_folder(folder)

    def sandbox_dir(self, folder: str) -> Path:
        return self.data_dir / "sandbox" / validate_group_folder(folder)

    @property
    def session_index_path(self) -> Path:
        return self.data_dir / "sessions.json"
