"""Per-group IPC namespace and visibility filtering.

Each group gets its own IPC directory (``data/ipc/<folder>/``), mounted into
its sandbox and nobody else's.  Before every run the host writes trust-scoped
snapshots of shared state into it:

- ``current_tasks.json``: primary sees every task, standard groups only
  their own.
- ``available_groups.json``: primary sees every discoverable group; standard
  groups see an empty list and so cannot enumerate or activate others.

These filters are the only place cross-group visibility is decided.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from pincer.models import AvailableGroup, ScheduledTask, TrustTier
from pincer.sandbox.layout import WorkspaceLayout
from pincer.sandbox.mounts import IPC_SUBDIRS

logger = logging.getLogger(__name__)

TASKS_SNAPSHOT = "current_tasks.json"
GROUPS_SNAPSHOT = "available_groups.json"


def visible_tasks(
    folder: str, trust_tier: TrustTier, tasks: Iterable[ScheduledTask]
) -> list[ScheduledTask]:
    if trust_tier == TrustTier.PRIMARY:
        return list(tasks)
    return [t for t in tasks if t.group_folder == folder]


def visible_groups(
    trust_tier: TrustTier,
    groups: Iterable[AvailableGroup],
    registered_jids: set[str],
) -> list[AvailableGroup]:
    if trust_tier != TrustTier.PRIMARY:
        return []
    return [g.model_copy(update={"is_registered": g.jid in registered_jids}) for g in groups]


class IpcNamespace:
    """Writes trust-filtered snapshots into each group's IPC directory."""

    def __init__(self, layout: WorkspaceLayout) -> None:
        self._layout = layout

    def ensure(self, folder: str) -> Path:
        ipc_dir = self._layout.ipc_dir(folder)
        for sub in IPC_SUBDIRS:
            (ipc_dir / sub).mkdir(parents=True, exist_ok=True)
        return ipc_dir

    def publish_task_snapshot(
        self,
        folder: str,
        trust_tier: TrustTier,
        tasks: Iterable[ScheduledTask],
    ) -> Path:
        visible = visible_tasks(folder, trust_tier, tasks)
        path = self.ensure(folder) / TASKS_SNAPSHOT
        write_json_atomic(path, [t.to_snapshot() for t in visible])
        logger.debug("Published %d task(s) to %s", len(visible), path)
        return path

    def publish_group_snapshot(
        self,
        folder: str,
        trust_tier: TrustTier,
        groups: Iterable[AvailableGroup],
        registered_jids: set[str],
    ) -> Path:
        visible = visible_groups(trust_tier, groups, registered_jids)
        path = self.ensure(folder) / GROUPS_SNAPSHOT
        write_json_atomic(
            path,
            {
                "groups": [g.model_dump(by_alias=True) for g in visible],
                "lastSync": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.debug("Published %d group(s) to %s", len(visible), path)
        return path


def write_json_atomic(path: Path, data: object) -> None:
    """Replace ``path`` in one rename so readers never see a partial file."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
