"""Per-invocation run logs for sandboxed agent runs.

One plain-text file per run under ``groups/<folder>/logs/``::

    === Agent Run Log ===
    Timestamp: 2026-01-01T12:00:00+00:00
    Group: family
    Trust Tier: standard
    Duration: 1234ms
    Exit Code: 0
    Signal: none
    State: decoded
    Stdout Truncated: False
    Stderr Truncated: False

followed by either verbose sections (full request, sandbox command, mounts,
full stderr/stdout) or, by default, a summary that never contains the
conversation itself: prompt length, session id, mounts, and on failure the
tail of stderr.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from pincer.models import ExecutionRequest, Mount

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunRecord:
    """Everything known about one invocation once its outcome is settled."""

    group_name: str
    folder: str
    trust_tier: str
    request: ExecutionRequest
    mounts: list[Mount] = field(default_factory=list)
    command: list[str] = field(default_factory=list)
    state: str = "building"
    duration_ms: int = 0
    exit_code: int | None = None
    signal: str | None = None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    failed: bool = False
    timestamp: str = field(default_factory=_now_iso)


class RunLogWriter:
    """Renders and writes run logs.  Never raises from ``write``."""

    def __init__(self, *, verbose: bool = False, error_tail: int = 500) -> None:
        self._verbose = verbose
        self._error_tail = error_tail

    @property
    def verbose(self) -> bool:
        return self._verbose or logging.getLogger("pincer").isEnabledFor(logging.DEBUG)

    def render(self, record: RunRecord) -> str:
        mounts = "\n".join(m.describe() for m in record.mounts) or "(none)"
        lines = [
            "=== Agent Run Log ===",
            f"Timestamp: {record.timestamp}",
            f"Group: {record.group_name}",
            f"Folder: {record.folder}",
            f"Trust Tier: {record.trust_tier}",
            f"Duration: {record.duration_ms}ms",
            f"Exit Code: {record.exit_code if record.exit_code is not None else 'null'}",
            f"Signal: {record.signal or 'none'}",
            f"State: {record.state}",
            f"Stdout Truncated: {record.stdout_truncated}",
            f"Stderr Truncated: {record.stderr_truncated}",
            "",
        ]

        if self.verbose:
            lines += [
                "=== Input ===",
                json.dumps(record.request.model_dump(by_alias=True), indent=2),
                "",
                "=== Sandbox Command ===",
                " ".join(record.command),
                "",
                "=== Mounts ===",
                mounts,
                "",
                f"=== Stderr{' (TRUNCATED)' if record.stderr_truncated else ''} ===",
                record.stderr,
                "",
                f"=== Stdout{' (TRUNCATED)' if record.stdout_truncated else ''} ===",
                record.stdout,
            ]
        else:
            lines += [
                "=== Input Summary ===",
                f"Prompt length: {len(record.request.prompt)} chars",
                f"Session ID: {record.request.session_id or 'new'}",
                "",
                "=== Mounts ===",
                mounts,
                "",
            ]
            if record.failed and record.stderr:
                lines += [
                    f"=== Stderr (last {self._error_tail} chars) ===",
                    record.stderr[-self._error_tail :],
                    "",
                ]
        return "\n".join(lines)

    def write(self, logs_dir: Path, record: RunRecord) -> Path | None:
        stamp = record.timestamp.replace(":", "-").replace(".", "-").replace("+", "_")
        log_file = logs_dir / f"run-{stamp}.log"
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            log_file.write_text(self.render(record))
        except OSError:
            logger.exception("Failed to write run log for %s", record.folder)
            return None
        logger.debug("Run log written: %s (verbose=%s)", log_file, self.verbose)
        return log_file
