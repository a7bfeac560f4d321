"""Core data models for Pincer.

Wire-facing models (``ExecutionRequest``, ``ExecutionResult``,
``AvailableGroup``) serialize with the camelCase field names the in-sandbox
agent harness reads and writes; Python code uses snake_case attributes.
"""

from __future__ import annotations

import enum
from pathlib import PurePosixPath
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Trust Tier ───────────────────────────────────────────────────────────────


class TrustTier(str, enum.Enum):
    """Classification of an identity controlling mount scope and visibility."""

    PRIMARY = "primary"
    STANDARD = "standard"


# ── Mounts ───────────────────────────────────────────────────────────────────


class AdditionalMount(BaseModel):
    """An extra mount requested in a group's container config.

    Never trusted: every entry goes through the allowlist validator before it
    becomes a ``Mount``.
    """

    host_path: str
    container_path: str | None = None  # name under /workspace/extra/; defaults to basename
    readonly: bool = True


class Mount(BaseModel):
    """A resolved host → sandbox mapping with a read/write flag."""

    model_config = ConfigDict(frozen=True)

    host_path: str
    container_path: str
    readonly: bool = False

    def describe(self) -> str:
        return f"{self.host_path} -> {self.container_path} ({'ro' if self.readonly else 'rw'})"


# ── Execution Protocol ───────────────────────────────────────────────────────


class ExecutionRequest(BaseModel):
    """A single request handed to the sandboxed agent on stdin."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    prompt: str
    session_id: str | None = Field(default=None, alias="sessionId")
    group_folder: str = Field(alias="groupFolder")
    chat_jid: str = Field(alias="chatJid")
    is_main: bool = Field(alias="isMain")
    is_scheduled_task: bool | None = Field(default=None, alias="isScheduledTask")

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class ExecutionResult(BaseModel):
    """The structured response decoded from the agent's output frame."""

    model_config = ConfigDict(populate_by_name=True)

    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = Field(default=None, alias="newSessionId")
    error: str | None = None

    @classmethod
    def failure(cls, message: str, new_session_id: str | None = None) -> ExecutionResult:
        return cls(status="error", result=None, error=message, new_session_id=new_session_id)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


# ── Shared State Records ─────────────────────────────────────────────────────


class ScheduledTask(BaseModel):
    """A scheduled task owned by one group (owned by the external scheduler)."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    group_folder: str = Field(alias="groupFolder")
    prompt: str
    schedule_type: str
    schedule_value: str
    status: str = "active"
    next_run: str | None = None

    def to_snapshot(self) -> dict:
        return self.model_dump(by_alias=True)


class AvailableGroup(BaseModel):
    """A chat the primary group may choose to register."""

    model_config = ConfigDict(populate_by_name=True)

    jid: str
    name: str
    last_activity: str = Field(default="", alias="lastActivity")
    is_registered: bool = Field(default=False, alias="isRegistered")


def extra_container_path(name: str) -> str:
    """Return the fixed logical location of an extra mount called ``name``."""
    return str(PurePosixPath("/workspace/extra") / name)
