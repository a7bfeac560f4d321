"""Host-side trust boundary for sandboxed agent runs.

- Mount resolution per trust tier, with the external allowlist validator
- Sandbox runtime wrapping (``srt`` settings file, graceful degrade)
- Environment construction with credential filtering
- Supervised agent subprocess: stdin request, bounded output, timeout kill
- Output framing shared with the in-sandbox harness
- Per-group IPC namespace and snapshot visibility filtering
- Per-run log files
"""

from .allowlist import AllowedRoot, MountAllowlist
from .audit import RunLogWriter, RunRecord
from .config import SandboxConfig
from .env_scrub import build_sandbox_env, load_exposed_credentials
from .errors import OutputDecodeError, PolicyViolation, SandboxError, SandboxSetupError
from .ipc import IpcNamespace, visible_groups, visible_tasks
from .layout import WorkspaceLayout
from .mounts import MountResolver
from .runner import RunState, SandboxRunner
from .runtime import SandboxRuntime, build_sandbox_settings

__all__ = [
    "AllowedRoot",
    "IpcNamespace",
    "MountAllowlist",
    "MountResolver",
    "OutputDecodeError",
    "PolicyViolation",
    "RunLogWriter",
    "RunRecord",
    "RunState",
    "SandboxConfig",
    "SandboxError",
    "SandboxRunner",
    "SandboxRuntime",
    "SandboxSetupError",
    "WorkspaceLayout",
    "build_sandbox_env",
    "build_sandbox_settings",
    "load_exposed_credentials",
    "visible_groups",
    "visible_tasks",
]
