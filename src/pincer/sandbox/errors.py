"""Exceptions raised inside the sandbox subsystem.

None of these cross ``SandboxRunner.execute``: the runner converts each one
into an error ``ExecutionResult``.
"""

from __future__ import annotations


class SandboxError(Exception):
    """Base class for sandbox subsystem failures."""


class PolicyViolation(SandboxError):
    """A requested mount or identity claim was rejected by policy."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class SandboxSetupError(SandboxError):
    """The sandboxing primitive could not produce a runnable command."""


class OutputDecodeError(SandboxError):
    """Agent output did not contain a parseable response."""
