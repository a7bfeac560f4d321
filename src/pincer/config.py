"""Configuration loading for Pincer.

Reads .pincer/config.yaml from the project root.  Pydantic models validate
the schema; environment variables override a few deployment settings.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from pincer.models import AdditionalMount, TrustTier
from pincer.sandbox.config import SandboxConfig
from pincer.sandbox.layout import WorkspaceLayout, validate_group_folder

logger = logging.getLogger(__name__)

CONFIG_DIR = ".pincer"
CONFIG_FILE = "config.yaml"


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str = "pincer"


class PathsConfig(BaseModel):
    """Locations relative to the project root."""

    groups_dir: str = "groups"
    data_dir: str = "data"

    @field_validator("groups_dir", "data_dir")
    @classmethod
    def _validate_relative(cls, v: str) -> str:
        """Reject absolute paths and traversal: both must stay inside the project."""
        from pathlib import PurePosixPath

        p = PurePosixPath(v)
        if p.is_absolute():
            raise ValueError(f"path must be relative to the project root, got absolute: {v!r}")
        if ".." in p.parts:
            raise ValueError(f"path must not contain directory traversal components (..): {v!r}")
        return v


class ContainerConfig(BaseModel):
    """Per-group execution overrides."""

    timeout: float | None = None  # seconds; None → sandbox.timeout_seconds
    additional_mounts: list[AdditionalMount] = Field(default_factory=list)
    # Ask to keep read-write extra mounts writable for a standard group.  Only
    # honoured when the mount allowlist sets nonMainReadOnly: false.
    allow_read_write_extras: bool = False


class GroupConfig(BaseModel):
    """A registered group: one identity with its own namespace folder."""

    jid: str  # channel identifier
    name: str
    folder: str
    trust_tier: TrustTier = TrustTier.STANDARD
    container_config: ContainerConfig = Field(default_factory=ContainerConfig)

    @field_validator("folder")
    @classmethod
    def _validate_folder(cls, v: str) -> str:
        return validate_group_folder(v)

    @property
    def is_main(self) -> bool:
        return self.trust_tier == TrustTier.PRIMARY


class PincerConfig(BaseModel):
    """Top-level Pincer configuration (matches .pincer/config.yaml)."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    groups: list[GroupConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_groups(self) -> PincerConfig:
        folders = [g.folder for g in self.groups]
        duplicates = sorted({f for f in folders if folders.count(f) > 1})
        if duplicates:
            raise ValueError(f"duplicate group folders: {', '.join(duplicates)}")
        primaries = [g.folder for g in self.groups if g.trust_tier == TrustTier.PRIMARY]
        if len(primaries) > 1:
            raise ValueError(
                f"only one group may have trust_tier 'primary', got: {', '.join(primaries)}"
            )
        return self

    def get_group(self, folder: str) -> GroupConfig | None:
        for group in self.groups:
            if group.folder == folder:
                return group
        return None

    @property
    def registered_jids(self) -> set[str]:
        return {g.jid for g in self.groups}

    def layout(self, project_root: Path) -> WorkspaceLayout:
        return WorkspaceLayout.from_root(
            project_root,
            groups_dir=self.paths.groups_dir,
            data_dir=self.paths.data_dir,
        )


# ── Config Loader ────────────────────────────────────────────────────────────


def load_config(project_root: Path) -> PincerConfig:
    """Load Pincer configuration from ``<project_root>/.pincer/config.yaml``.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ValueError: If config validation fails.
    """
    config_path = project_root / CONFIG_DIR / CONFIG_FILE
    if not config_path.exists():
        raise FileNotFoundError(f"Pincer config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    # Environment variable overrides for deployment
    sandbox_raw = raw.setdefault("sandbox", {}) or {}
    raw["sandbox"] = sandbox_raw

    timeout = os.environ.get("PINCER_SANDBOX_TIMEOUT")
    if timeout:
        sandbox_raw["timeout_seconds"] = float(timeout)

    verbose = os.environ.get("PINCER_VERBOSE_RUN_LOGS")
    if verbose is not None:
        sandbox_raw["verbose_run_logs"] = verbose.lower() in ("1", "true", "yes")

    enforce = os.environ.get("PINCER_SANDBOX_ENFORCE")
    if enforce is not None:
        sandbox_raw["enforce"] = enforce.lower() in ("1", "true", "yes")

    allowlist = os.environ.get("PINCER_MOUNT_ALLOWLIST")
    if allowlist:
        sandbox_raw["allowlist_path"] = allowlist

    config = PincerConfig(**raw)
    logger.info(
        "Loaded Pincer config: project=%s, groups=%d", config.project.name, len(config.groups)
    )
    return config
