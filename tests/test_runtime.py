"""Tests for sandbox runtime wrapping and settings generation."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from pincer.models import Mount
from pincer.sandbox.config import SandboxConfig
from pincer.sandbox.errors import SandboxSetupError
from pincer.sandbox.runtime import (
    SETTINGS_FILENAME,
    SandboxRuntime,
    build_sandbox_settings,
    default_agent_command,
)

MOUNTS = [
    Mount(host_path="/p/groups/family", container_path="/workspace/group"),
    Mount(host_path="/p/groups/global", container_path="/workspace/global", readonly=True),
    Mount(host_path="/p/data/sessions/family", container_path="/workspace/sessions"),
]


class TestSettings:
    def test_only_writable_mounts_allowed(self):
        settings = build_sandbox_settings(MOUNTS)
        assert settings["filesystem"]["allowWrite"] == [
            "/p/groups/family",
            "/p/data/sessions/family",
        ]
        assert settings["filesystem"]["denyRead"] == []
        assert settings["filesystem"]["denyWrite"] == []
        assert "network" not in settings

    def test_network_domains(self):
        settings = build_sandbox_settings(MOUNTS, ["api.openai.com"])
        assert settings["network"] == {"allowedDomains": ["api.openai.com"], "deniedDomains": []}


class TestSandboxRuntime:
    def test_default_agent_command(self):
        runtime = SandboxRuntime(SandboxConfig())
        assert runtime.agent_command() == default_agent_command()
        assert default_agent_command() == [sys.executable, "-m", "pincer.agent"]

    def test_custom_agent_command(self):
        runtime = SandboxRuntime(SandboxConfig(agent_command=["my-agent", "--fast"]))
        assert runtime.agent_command() == ["my-agent", "--fast"]

    def test_missing_runtime_enforced(self, tmp_path: Path):
        runtime = SandboxRuntime(SandboxConfig(runtime_command=["pincer-test-missing-runtime"]))
        assert not runtime.available
        with pytest.raises(SandboxSetupError, match="not found"):
            runtime.wrap_command(["agent"], build_sandbox_settings(MOUNTS), tmp_path)

    def test_missing_runtime_degrades(self, tmp_path: Path):
        runtime = SandboxRuntime(
            SandboxConfig(runtime_command=["pincer-test-missing-runtime"], enforce=False)
        )
        assert runtime.wrap_command(["agent", "x"], {}, tmp_path) == ["agent", "x"]
        assert not (tmp_path / SETTINGS_FILENAME).exists()

    def test_wrap_writes_settings(self, tmp_path: Path):
        fake = tmp_path / "bin" / "fake-srt"
        fake.parent.mkdir()
        fake.write_text("#!/bin/sh\nshift 2\nexec \"$@\"\n")
        fake.chmod(0o755)
        runtime = SandboxRuntime(SandboxConfig(runtime_command=[str(fake)]))
        settings = build_sandbox_settings(MOUNTS)

        cmd = runtime.wrap_command(["agent"], settings, tmp_path / "sandbox")

        settings_path = tmp_path / "sandbox" / SETTINGS_FILENAME
        assert cmd == [str(fake), "--settings", str(settings_path), "agent"]
        assert json.loads(settings_path.read_text()) == settings

    def test_settings_write_failure(self, tmp_path: Path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        runtime = SandboxRuntime(SandboxConfig())
        with pytest.raises(SandboxSetupError, match="cannot write"):
            runtime.write_settings({}, blocker / "sub")
