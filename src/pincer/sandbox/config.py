"""Sandbox configuration model."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SandboxConfig(BaseModel):
    """Configuration for sandboxed agent execution."""

    # Refuse to run when the sandbox runtime is unavailable. Only disable for
    # local development: the agent then runs with the host's write access.
    enforce: bool = True
    runtime_command: list[str] = Field(default_factory=lambda: ["srt"])
    # Empty → ``python -m pincer.agent`` with the host interpreter.
    agent_command: list[str] = Field(default_factory=list)

    timeout_seconds: float = 300.0
    max_output_bytes: int = 10 * 1024 * 1024

    # ── Environment ──────────────────────────────────────────────────────────
    # Credentials the agent may see. Values come from ``env_file`` first,
    # then from the host environment.
    exposed_env_vars: list[str] = Field(default_factory=lambda: ["OPENAI_API_KEY"])
    env_file: str = ".env"
    # Strip inherited variables that look like credentials and are not exposed.
    scrub_inherited_secrets: bool = False
    secret_name_patterns: list[str] = Field(
        default_factory=lambda: [
            "API_KEY",
            "SECRET",
            "PRIVATE_KEY",
            "ACCESS_TOKEN",
            "AUTH_TOKEN",
            "PASSWORD",
        ]
    )

    # ── Run logs ─────────────────────────────────────────────────────────────
    verbose_run_logs: bool = False
    run_log_error_tail: int = 500

    # ── Policy ───────────────────────────────────────────────────────────────
    # Lives outside the project tree so the agent can never rewrite it.
    allowlist_path: str = "~/.config/pincer/mount-allowlist.json"
    network_allowed_domains: list[str] = Field(default_factory=list)
