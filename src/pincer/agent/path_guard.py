"""In-sandbox path guard.

Every file tool calls ``resolve_path`` before touching the filesystem.  The
allowed roots are re-derived inside the sandbox (group folder, plus the
project root for the primary group) independently of the host-side mount
resolver, so a bug there alone is not enough to cross a group boundary.

Usage::

    roots = allowed_roots(group_dir, project_dir, is_main=False)
    path = resolve_path("notes/today.md", roots, group_dir)  # ok
    resolve_path("../other-group/secrets.md", roots, group_dir)  # PathDenied
"""

from __future__ import annotations

import os
from pathlib import Path, PurePath


class PathDenied(PermissionError):
    """A tool path resolved outside the group's allowed roots."""


def allowed_roots(group_dir: str | Path, project_dir: str | Path | None, *, is_main: bool) -> list[Path]:
    """Roots a tool may touch: the group folder, plus the project for primary."""
    roots = [Path(group_dir)]
    if is_main and project_dir:
        roots.append(Path(project_dir))
    return roots


def _canonical(path: str | Path) -> Path:
    return Path(os.path.realpath(path))


def resolve_path(
    requested: str | Path,
    roots: list[Path],
    base_dir: str | Path,
) -> Path:
    """Resolve ``requested`` and return it only if it stays inside ``roots``.

    Relative paths are joined to ``base_dir``.  The result is canonicalized
    (symlinks followed) and must equal an allowed root or lie strictly below
    one, compared component-wise.

    Raises:
        PathDenied: on empty input, NUL bytes, ``..`` segments, or escape.
    """
    raw = str(requested)
    if not raw.strip():
        raise PathDenied("Path is empty")
    if "\x00" in raw:
        raise PathDenied("Path contains a NUL byte")
    if ".." in PurePath(raw).parts:
        raise PathDenied(f"Path traversal not allowed: {raw}")
    if not roots:
        raise PathDenied("No allowed roots configured")

    candidate = Path(raw)
    if not candidate.is_absolute():
        candidate = Path(base_dir) / candidate
    resolved = _canonical(candidate)

    for root in roots:
        canonical_root = _canonical(root)
        if resolved == canonical_root or resolved.is_relative_to(canonical_root):
            return resolved
    raise PathDenied(f"Path not allowed: {resolved}")
