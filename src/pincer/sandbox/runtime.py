"""Wraps the agent command in the external sandbox runtime.

The runtime (``srt`` by default) restricts filesystem writes to an explicit
allowlist.  Pincer only produces its settings: every writable mount's host
path goes on ``filesystem.allowWrite``; nothing else is writable and no read
restrictions are added.
"""

from __future__ import annotations

import json
import logging
import shutil
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from pincer.sandbox.errors import SandboxSetupError
from pincer.sandbox.mounts import writable_paths

if TYPE_CHECKING:
    from pincer.models import Mount
    from pincer.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "srt-settings.json"


def build_sandbox_settings(
    mounts: Iterable[Mount],
    network_allowed_domains: list[str] | None = None,
) -> dict:
    """Return the runtime settings document for a mount set."""
    settings: dict = {
        "filesystem": {
            "denyRead": [],
            "allowWrite": writable_paths(mounts),
            "denyWrite": [],
        }
    }
    if network_allowed_domains:
        settings["network"] = {
            "allowedDomains": list(network_allowed_domains),
            "deniedDomains": [],
        }
    return settings


def default_agent_command() -> list[str]:
    return [sys.executable, "-m", "pincer.agent"]


class SandboxRuntime:
    """Builds the sandboxed command line for one invocation.

    With ``enforce`` disabled and the runtime missing, ``wrap_command``
    degrades to the unwrapped command and logs a warning.
    """

    def __init__(self, config: SandboxConfig) -> None:
        self._config = config

    @property
    def available(self) -> bool:
        cmd = self._config.runtime_command
        return bool(cmd) and shutil.which(cmd[0]) is not None

    def agent_command(self) -> list[str]:
        return list(self._config.agent_command) or default_agent_command()

    def write_settings(self, settings: dict, settings_dir: Path) -> Path:
        try:
            settings_dir.mkdir(parents=True, exist_ok=True)
            path = settings_dir / SETTINGS_FILENAME
            path.write_text(json.dumps(settings, indent=2))
        except OSError as exc:
            raise SandboxSetupError(f"cannot write sandbox settings: {exc}") from exc
        return path

    def wrap_command(self, cmd: list[str], settings: dict, settings_dir: Path) -> list[str]:
        """Return ``cmd`` wrapped in the sandbox runtime.

        Raises:
            SandboxSetupError: if the runtime is unavailable while enforced,
                or its settings cannot be written.
        """
        if not self.available:
            runtime = self._config.runtime_command[0] if self._config.runtime_command else "<none>"
            if self._config.enforce:
                raise SandboxSetupError(f"sandbox runtime not found: {runtime}")
            logger.warning(
                "Sandbox runtime %s not available -- running agent WITHOUT write isolation",
                runtime,
            )
            return list(cmd)

        settings_path = self.write_settings(settings, settings_dir)
        return [*self._config.runtime_command, "--settings", str(settings_path), *cmd]
