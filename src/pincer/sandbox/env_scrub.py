"""Environment construction for sandboxed agent processes.

Builds the environment dict for the agent subprocess by:
1. Starting from the host environment (optionally dropping inherited
   variables whose names look like credentials).
2. Adding each exposable credential (``SandboxConfig.exposed_env_vars``),
   read from the project ``.env`` file first and the host environment second.
3. Injecting the fixed ``PINCER_*`` location variables.

Only the location variables for the group's own directories are set;
``PINCER_PROJECT_DIR`` is empty unless the group is primary.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from dotenv import dotenv_values

if TYPE_CHECKING:
    from pincer.sandbox.config import SandboxConfig
    from pincer.sandbox.layout import WorkspaceLayout

logger = logging.getLogger(__name__)

GROUP_DIR_ENV = "PINCER_GROUP_DIR"
SESSIONS_DIR_ENV = "PINCER_SESSIONS_DIR"
IPC_DIR_ENV = "PINCER_IPC_DIR"
GLOBAL_DIR_ENV = "PINCER_GLOBAL_DIR"
PROJECT_DIR_ENV = "PINCER_PROJECT_DIR"

LOCATION_ENV_VARS = (
    GROUP_DIR_ENV,
    SESSIONS_DIR_ENV,
    IPC_DIR_ENV,
    GLOBAL_DIR_ENV,
    PROJECT_DIR_ENV,
)


def load_exposed_credentials(config: SandboxConfig, project_root: Path) -> dict[str, str]:
    """Return the exposable credential values.

    The ``.env`` file wins over the host environment; variables not named in
    ``exposed_env_vars`` are never read from it.
    """
    allowed = list(config.exposed_env_vars)
    result: dict[str, str] = {}

    env_file = project_root / config.env_file
    file_values: dict[str, str | None] = {}
    if env_file.is_file():
        try:
            file_values = dotenv_values(env_file)
        except OSError:
            logger.warning("Could not read env file %s", env_file)

    for key in allowed:
        value = file_values.get(key)
        if value:
            result[key] = value
            continue
        ambient = os.environ.get(key)
        if ambient:
            result[key] = ambient
    return result


def build_sandbox_env(
    config: SandboxConfig,
    layout: WorkspaceLayout,
    folder: str,
    *,
    is_main: bool,
) -> dict[str, str]:
    """Build the environment for one agent subprocess.

    Returns:
        A new dict; never mutates ``os.environ``.
    """
    env = dict(os.environ)
    exposed = set(config.exposed_env_vars)

    if config.scrub_inherited_secrets:
        patterns = [p.upper() for p in config.secret_name_patterns]
        stripped: list[str] = []
        for key in list(env.keys()):
            if key in exposed:
                continue
            key_upper = key.upper()
            if any(pattern in key_upper for pattern in patterns):
                del env[key]
                stripped.append(key)
        if stripped:
            logger.info(
                "Env scrub: stripped %d secret vars: %s",
                len(stripped),
                ", ".join(sorted(stripped)),
            )

    # Exposed credentials are re-resolved so the .env value takes precedence.
    for key in exposed:
        env.pop(key, None)
    env.update(load_exposed_credentials(config, layout.project_root))

    global_dir = layout.global_dir
    env[GROUP_DIR_ENV] = str(layout.group_dir(folder))
    env[SESSIONS_DIR_ENV] = str(layout.sessions_dir(folder))
    env[IPC_DIR_ENV] = str(layout.ipc_dir(folder))
    env[GLOBAL_DIR_ENV] = str(global_dir) if global_dir.is_dir() else ""
    env[PROJECT_DIR_ENV] = str(layout.project_root) if is_main else ""
    return env
