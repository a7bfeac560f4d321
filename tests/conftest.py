"""Shared fixtures for Pincer tests."""

from __future__ import annotations

import json
import sys
import textwrap
from pathlib import Path

import pytest

from pincer.config import ContainerConfig, GroupConfig
from pincer.models import AdditionalMount, ExecutionRequest, TrustTier
from pincer.sandbox.allowlist import MountAllowlist
from pincer.sandbox.config import SandboxConfig
from pincer.sandbox.layout import WorkspaceLayout


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "groups" / "global").mkdir(parents=True)
    (root / "groups" / "main").mkdir(parents=True)
    (root / "groups" / "family").mkdir(parents=True)
    return root


@pytest.fixture
def layout(project_root: Path) -> WorkspaceLayout:
    return WorkspaceLayout.from_root(project_root)


@pytest.fixture
def shared_root(tmp_path: Path) -> Path:
    """A host directory outside the project that the allowlist can grant."""
    root = tmp_path / "shared"
    (root / "docs").mkdir(parents=True)
    (root / "code").mkdir(parents=True)
    return root


@pytest.fixture
def write_allowlist(tmp_path: Path):
    """Write an allowlist JSON file outside the shared root and load it."""

    def _write(data: dict) -> MountAllowlist:
        config_dir = tmp_path / "config"
        config_dir.mkdir(exist_ok=True)
        path = config_dir / "mount-allowlist.json"
        path.write_text(json.dumps(data))
        return MountAllowlist.load(path)

    return _write


@pytest.fixture
def main_group() -> GroupConfig:
    return GroupConfig(jid="main@chat", name="Main", folder="main", trust_tier=TrustTier.PRIMARY)


@pytest.fixture
def family_group() -> GroupConfig:
    return GroupConfig(jid="family@chat", name="Family", folder="family")


def make_group(
    folder: str,
    *,
    tier: TrustTier = TrustTier.STANDARD,
    extras: list[AdditionalMount] | None = None,
    timeout: float | None = None,
) -> GroupConfig:
    return GroupConfig(
        jid=f"{folder}@chat",
        name=folder.title(),
        folder=folder,
        trust_tier=tier,
        container_config=ContainerConfig(timeout=timeout, additional_mounts=extras or []),
    )


def request_for(group: GroupConfig, prompt: str = "hello", **kwargs) -> ExecutionRequest:
    return ExecutionRequest(
        prompt=prompt,
        group_folder=group.folder,
        chat_jid=group.jid,
        is_main=group.is_main,
        **kwargs,
    )


@pytest.fixture
def agent_script(tmp_path: Path):
    """Write a small Python agent and return a SandboxConfig that runs it."""

    def _make(body: str, **config_overrides) -> SandboxConfig:
        script = tmp_path / "agents" / f"agent_{len(list(tmp_path.glob('agents/*.py')))}.py"
        script.parent.mkdir(exist_ok=True)
        script.write_text(textwrap.dedent(body))
        options = {
            "enforce": False,
            "runtime_command": ["pincer-test-missing-runtime"],
            "agent_command": [sys.executable, str(script)],
            "exposed_env_vars": [],
            "timeout_seconds": 30,
        }
        options.update(config_overrides)
        return SandboxConfig(**options)

    return _make
