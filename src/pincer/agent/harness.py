"""In-sandbox agent harness.

Runs inside the sandboxed subprocess.  Reads one ``ExecutionRequest`` JSON
document from stdin, hands an ``AgentContext`` to the configured backend and
writes exactly one response frame to stdout.  Diagnostics go to stderr only,
so the host can decode stdout without interference.

The backend is a ``module:callable`` named by ``PINCER_AGENT_BACKEND``.  It
receives the context and returns the final response text, either directly
or as an awaitable.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, TextIO

from pydantic import ValidationError

from pincer.agent.path_guard import allowed_roots
from pincer.agent.session import FileSession, StoredMessage
from pincer.agent.tools import ToolDefinition, WorkspaceTools
from pincer.models import ExecutionRequest, ExecutionResult
from pincer.sandbox.env_scrub import (
    GLOBAL_DIR_ENV,
    GROUP_DIR_ENV,
    IPC_DIR_ENV,
    PROJECT_DIR_ENV,
    SESSIONS_DIR_ENV,
)
from pincer.sandbox.protocol import encode_frame

logger = logging.getLogger(__name__)

BACKEND_ENV = "PINCER_AGENT_BACKEND"
INSTRUCTIONS_FILE = "CLAUDE.md"
DEFAULT_INSTRUCTIONS = "You are a helpful assistant."
SCHEDULED_PREFIX = (
    "[SCHEDULED TASK - You are running automatically, not in response to a "
    "user message. Nobody is waiting for a reply.]\n\n"
)

Backend = Callable[["AgentContext"], Any]


class HarnessError(Exception):
    """The harness could not set up the agent run."""


@dataclass
class AgentContext:
    """Everything a backend gets for one turn."""

    prompt: str
    instructions: str
    request: ExecutionRequest
    session: FileSession
    history: list[StoredMessage] = field(default_factory=list)
    tools: list[ToolDefinition] = field(default_factory=list)

    def tool(self, name: str) -> ToolDefinition | None:
        for definition in self.tools:
            if definition.name == name:
                return definition
        return None


def echo_backend(ctx: AgentContext) -> str:
    """Backend that returns the prompt unchanged; for smoke tests."""
    return ctx.prompt


def load_backend(target: str | None) -> Backend:
    """Import ``module:callable``.

    Raises:
        HarnessError: if the target is missing, malformed or unresolvable.
    """
    if not target:
        raise HarnessError(f"No agent backend configured (set {BACKEND_ENV}=module:callable)")
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise HarnessError(f"Invalid agent backend {target!r}: expected module:callable")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise HarnessError(f"Cannot import agent backend module {module_name!r}: {exc}") from exc
    backend = getattr(module, attr, None)
    if not callable(backend):
        raise HarnessError(f"Agent backend {target!r} is not callable")
    return backend


def build_instructions(group_dir: Path, global_dir: Path | None) -> str:
    """Global instructions first, then the group's own."""
    parts: list[str] = []
    global_file = global_dir / INSTRUCTIONS_FILE if global_dir is not None else None
    for candidate in (global_file, group_dir / INSTRUCTIONS_FILE):
        if candidate is not None and candidate.is_file():
            text = candidate.read_text(errors="replace").strip()
            if text:
                parts.append(text)
    return "\n\n".join(parts) if parts else DEFAULT_INSTRUCTIONS


def archive_exchange(group_dir: Path, prompt: str, response: str, now: datetime | None = None) -> Path:
    """Append one exchange to ``conversations/<date>.md`` in the group folder."""
    now = now or datetime.now()
    conversations = group_dir / "conversations"
    conversations.mkdir(parents=True, exist_ok=True)
    path = conversations / f"{now:%Y-%m-%d}.md"
    new_file = not path.exists()
    with open(path, "a") as fh:
        if new_file:
            fh.write(f"# Conversation {now:%Y-%m-%d}\n\n")
        fh.write(f"## {now:%H:%M:%S}\n\n**User**: {prompt}\n\n**Assistant**: {response}\n\n---\n\n")
    return path


def _optional_dir(env: Mapping[str, str], name: str) -> Path | None:
    value = env.get(name, "")
    return Path(value) if value else None


def _required_dir(env: Mapping[str, str], name: str) -> Path:
    path = _optional_dir(env, name)
    if path is None:
        raise HarnessError(f"Missing environment variable {name}")
    return path


async def run_agent(
    raw_request: str,
    env: Mapping[str, str],
    *,
    backend: Backend | None = None,
    out: TextIO | None = None,
) -> int:
    """Run one request end to end and write the response frame to ``out``.

    Returns the process exit code: 0 on success, 1 on any error.
    """
    out = out if out is not None else sys.stdout

    def emit(result: ExecutionResult) -> None:
        out.write(encode_frame(result))
        out.flush()

    try:
        request = ExecutionRequest.model_validate_json(raw_request)
    except ValidationError as exc:
        logger.error("Failed to parse request: %s", exc)
        emit(ExecutionResult.failure(f"Failed to parse input: {exc.errors()[0]['msg']}"))
        return 1

    try:
        group_dir = _required_dir(env, GROUP_DIR_ENV)
        sessions_dir = _required_dir(env, SESSIONS_DIR_ENV)
        project_dir = _optional_dir(env, PROJECT_DIR_ENV)
        if backend is None:
            backend = load_backend(env.get(BACKEND_ENV))
        session = FileSession(sessions_dir, request.session_id)
    except (HarnessError, ValueError, OSError) as exc:
        logger.error("Agent setup failed: %s", exc)
        emit(ExecutionResult.failure(str(exc)))
        return 1

    roots = allowed_roots(group_dir, project_dir, is_main=request.is_main)
    tools = WorkspaceTools(group_dir, roots, _optional_dir(env, IPC_DIR_ENV))
    prompt = request.prompt
    if request.is_scheduled_task:
        prompt = SCHEDULED_PREFIX + prompt

    ctx = AgentContext(
        prompt=prompt,
        instructions=build_instructions(group_dir, _optional_dir(env, GLOBAL_DIR_ENV)),
        request=request,
        session=session,
        history=session.messages(),
        tools=tools.definitions(),
    )
    session.append("user", prompt)
    logger.info(
        "Starting agent for group=%s session=%s (history=%d)",
        request.group_folder,
        session.session_id,
        len(ctx.history),
    )

    try:
        reply = backend(ctx)
        if inspect.isawaitable(reply):
            reply = await reply
    except Exception as exc:
        logger.exception("Agent backend failed")
        emit(ExecutionResult.failure(str(exc) or type(exc).__name__, new_session_id=session.session_id))
        return 1

    text = "" if reply is None else str(reply)
    session.append("assistant", text)
    try:
        archive_exchange(group_dir, request.prompt, text)
    except OSError as exc:
        logger.warning("Failed to archive conversation: %s", exc)

    emit(ExecutionResult(status="success", result=text or None, new_session_id=session.session_id))
    return 0


def main(stdin: TextIO | None = None, env: Mapping[str, str] | None = None) -> int:
    stdin = stdin if stdin is not None else sys.stdin
    return asyncio.run(run_agent(stdin.read(), env if env is not None else os.environ))
