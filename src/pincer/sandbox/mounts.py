"""Mount resolution for sandboxed agent runs.

Base mounts are fixed by trust tier and never configurable:

    primary:   project root (rw), own group folder (rw)
    standard:  own group folder (rw), global folder (ro, if present)
    everyone:  own session storage (rw), own IPC namespace (rw)

Extra mounts requested in a group's container config are validated against
the external ``MountAllowlist``.  Validation is fail-closed: the first bad
entry aborts resolution for the whole invocation.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Iterable

from pincer.models import AdditionalMount, Mount, TrustTier, extra_container_path
from pincer.sandbox.allowlist import MountAllowlist
from pincer.sandbox.errors import PolicyViolation
from pincer.sandbox.layout import WorkspaceLayout

logger = logging.getLogger(__name__)

PROJECT_MOUNT = "/workspace/project"
GROUP_MOUNT = "/workspace/group"
GLOBAL_MOUNT = "/workspace/global"
SESSIONS_MOUNT = "/workspace/sessions"
IPC_MOUNT = "/workspace/ipc"

IPC_SUBDIRS = ("messages", "tasks")


class MountResolver:
    """Computes the exact mount set a group's sandboxed run may see."""

    def __init__(self, layout: WorkspaceLayout, allowlist: MountAllowlist) -> None:
        self._layout = layout
        self._allowlist = allowlist

    @property
    def allowlist(self) -> MountAllowlist:
        return self._allowlist

    def resolve_mounts(
        self,
        folder: str,
        trust_tier: TrustTier,
        extra_mounts: Iterable[AdditionalMount] = (),
        *,
        allow_read_write_extras: bool = False,
    ) -> list[Mount]:
        """Return the ordered mount list for one invocation.

        Raises:
            PolicyViolation: if any requested extra mount is not permitted.
            OSError: if an owned directory cannot be created.
        """
        layout = self._layout
        group_dir = layout.group_dir(folder)
        group_dir.mkdir(parents=True, exist_ok=True)

        mounts: list[Mount] = []
        if trust_tier == TrustTier.PRIMARY:
            mounts.append(Mount(host_path=_real(layout.project_root), container_path=PROJECT_MOUNT))
            mounts.append(Mount(host_path=_real(group_dir), container_path=GROUP_MOUNT))
        else:
            mounts.append(Mount(host_path=_real(group_dir), container_path=GROUP_MOUNT))
            if layout.global_dir.is_dir():
                mounts.append(
                    Mount(
                        host_path=_real(layout.global_dir),
                        container_path=GLOBAL_MOUNT,
                        readonly=True,
                    )
                )

        sessions_dir = layout.sessions_dir(folder)
        sessions_dir.mkdir(parents=True, exist_ok=True)
        mounts.append(Mount(host_path=_real(sessions_dir), container_path=SESSIONS_MOUNT))

        ipc_dir = layout.ipc_dir(folder)
        for sub in IPC_SUBDIRS:
            (ipc_dir / sub).mkdir(parents=True, exist_ok=True)
        mounts.append(Mount(host_path=_real(ipc_dir), container_path=IPC_MOUNT))

        extras = list(extra_mounts)
        if extras:
            mounts.extend(
                self.validate_additional_mounts(
                    extras,
                    folder=folder,
                    trust_tier=trust_tier,
                    allow_read_write_extras=allow_read_write_extras,
                )
            )
        return mounts

    def validate_additional_mounts(
        self,
        requested: list[AdditionalMount],
        *,
        folder: str,
        trust_tier: TrustTier,
        allow_read_write_extras: bool = False,
    ) -> list[Mount]:
        """Validate every requested extra mount, or raise on the first bad one."""
        validated: list[Mount] = []
        seen_targets: set[str] = set()
        for entry in requested:
            mount = self._validate_one(
                entry,
                trust_tier=trust_tier,
                allow_read_write_extras=allow_read_write_extras,
            )
            if mount.container_path in seen_targets:
                raise PolicyViolation(
                    f"Duplicate container path {mount.container_path!r}",
                    path=entry.host_path,
                )
            seen_targets.add(mount.container_path)
            validated.append(mount)
            logger.debug("Extra mount approved for %s: %s", folder, mount.describe())
        return validated

    def _validate_one(
        self,
        entry: AdditionalMount,
        *,
        trust_tier: TrustTier,
        allow_read_write_extras: bool,
    ) -> Mount:
        allowlist = self._allowlist
        raw = entry.host_path

        # Resolve symlinks before any comparison: a link inside an allowed
        # root may point anywhere.
        try:
            resolved = Path(os.path.expanduser(raw)).resolve(strict=True)
        except (OSError, RuntimeError) as exc:
            raise PolicyViolation(f"Mount path does not exist: {raw}", path=raw) from exc
        if not resolved.is_absolute():
            raise PolicyViolation(f"Mount path is not absolute: {raw}", path=raw)

        pattern = allowlist.matching_blocked_pattern(str(resolved))
        if pattern is not None:
            raise PolicyViolation(
                f"Mount path {resolved} matches blocked pattern {pattern!r}", path=raw
            )

        if allowlist.source_path and Path(allowlist.source_path).is_relative_to(resolved):
            raise PolicyViolation(
                f"Mount path {resolved} would expose the mount allowlist", path=raw
            )

        root = allowlist.find_root(resolved)
        if root is None:
            raise PolicyViolation(
                f"Mount path {resolved} is not under any allowed root", path=raw
            )

        name = entry.container_path if entry.container_path is not None else resolved.name
        _check_container_name(name, raw)

        readonly = entry.readonly or not root.allow_read_write
        if trust_tier != TrustTier.PRIMARY and not readonly:
            forced = allowlist.non_main_read_only or not allow_read_write_extras
            if forced:
                logger.info("Forcing read-only for non-main mount %s", resolved)
                readonly = True

        return Mount(
            host_path=str(resolved),
            container_path=extra_container_path(name),
            readonly=readonly,
        )


def _check_container_name(name: str, raw: str) -> None:
    p = PurePosixPath(name)
    if not name.strip():
        raise PolicyViolation("Container path must not be empty", path=raw)
    if p.is_absolute():
        raise PolicyViolation(f"Container path must be relative: {name!r}", path=raw)
    if ".." in p.parts or p == PurePosixPath("."):
        raise PolicyViolation(f"Container path must not traverse: {name!r}", path=raw)


def _real(path: Path) -> str:
    return os.path.realpath(path)


def writable_paths(mounts: Iterable[Mount]) -> list[str]:
    """Host paths the sandbox may write to; nothing else is writable."""
    return [m.host_path for m in mounts if not m.readonly]
