"""Mount allowlist: the sole authority for mounts beyond the fixed set.

The allowlist is a JSON document kept outside the project tree (by default
``~/.config/pincer/mount-allowlist.json``), so nothing running inside the
sandbox can modify it.  It is loaded once, explicitly, and is immutable
afterwards; the mount resolver never re-reads it mid-validation.

Example::

    {
      "allowedRoots": [
        {"path": "~/projects", "allowReadWrite": true, "description": "code"},
        {"path": "~/Documents/shared", "allowReadWrite": false}
      ],
      "blockedPatterns": ["password"],
      "nonMainReadOnly": true
    }
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

# Always blocked, whatever the allowlist file says.
DEFAULT_BLOCKED_PATTERNS: tuple[str, ...] = (
    ".ssh",
    ".gnupg",
    ".gpg",
    ".aws",
    ".azure",
    ".gcloud",
    ".kube",
    ".docker",
    "credentials",
    ".env",
    ".netrc",
    ".npmrc",
    ".pypirc",
    "id_rsa",
    "id_ed25519",
    "private_key",
    ".secret",
)


class AllowedRoot(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    path: str
    allow_read_write: bool = Field(default=False, alias="allowReadWrite")
    description: str = ""


class MountAllowlist(BaseModel):
    """Validated, frozen allowlist.

    ``allowed_roots`` hold symlink-resolved absolute paths after ``load()``;
    roots that do not exist on this host are dropped.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    allowed_roots: tuple[AllowedRoot, ...] = Field(default=(), alias="allowedRoots")
    blocked_patterns: tuple[str, ...] = Field(default=(), alias="blockedPatterns")
    non_main_read_only: bool = Field(default=True, alias="nonMainReadOnly")
    source_path: str | None = None

    @classmethod
    def empty(cls, source_path: str | Path | None = None) -> MountAllowlist:
        """An allowlist that permits no extra mounts at all."""
        return cls(
            blocked_patterns=DEFAULT_BLOCKED_PATTERNS,
            source_path=str(source_path) if source_path else None,
        )

    @classmethod
    def load(cls, path: str | Path) -> MountAllowlist:
        """Load and normalize the allowlist at ``path``.

        A missing or malformed file yields an empty allowlist (every extra
        mount is then rejected) rather than an exception.
        """
        file_path = Path(os.path.expanduser(str(path)))
        try:
            resolved_file = file_path.resolve()
        except OSError:
            resolved_file = file_path.absolute()

        if not file_path.is_file():
            logger.warning(
                "Mount allowlist not found at %s: additional mounts are disabled", file_path
            )
            return cls.empty(resolved_file)

        try:
            raw = cls.model_validate_json(file_path.read_text())
        except (OSError, ValidationError) as exc:
            logger.error("Invalid mount allowlist %s: %s", file_path, exc)
            return cls.empty(resolved_file)

        roots: list[AllowedRoot] = []
        for root in raw.allowed_roots:
            expanded = Path(os.path.expanduser(root.path))
            if not expanded.is_absolute():
                logger.warning("Ignoring relative allowlist root %r", root.path)
                continue
            try:
                real = expanded.resolve(strict=True)
            except (OSError, RuntimeError):
                logger.warning("Ignoring allowlist root that does not exist: %s", expanded)
                continue
            roots.append(
                AllowedRoot(
                    path=str(real),
                    allow_read_write=root.allow_read_write,
                    description=root.description,
                )
            )

        patterns = tuple(dict.fromkeys((*DEFAULT_BLOCKED_PATTERNS, *raw.blocked_patterns)))
        allowlist = cls(
            allowed_roots=tuple(roots),
            blocked_patterns=patterns,
            non_main_read_only=raw.non_main_read_only,
            source_path=str(resolved_file),
        )
        logger.info(
            "Loaded mount allowlist: %d root(s), %d blocked pattern(s)",
            len(allowlist.allowed_roots),
            len(allowlist.blocked_patterns),
        )
        return allowlist

    def matching_blocked_pattern(self, path: str) -> str | None:
        lowered = path.lower()
        for pattern in self.blocked_patterns:
            if pattern and pattern.lower() in lowered:
                return pattern
        return None

    def find_root(self, path: Path) -> AllowedRoot | None:
        """Return the innermost allowed root containing ``path`` (or equal to it)."""
        matches = [root for root in self.allowed_roots if path.is_relative_to(root.path)]
        if not matches:
            return None
        return max(matches, key=lambda root: len(Path(root.path).parts))
