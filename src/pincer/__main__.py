"""Pincer CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# ── Default templates for `pincer init` ──────────────────────────────────────

_DEFAULT_CONFIG = """\
# .pincer/config.yaml: Pincer project configuration

project:
  name: "{project_name}"

paths:
  groups_dir: groups
  data_dir: data

sandbox:
  enforce: true
  runtime_command: [srt]
  timeout_seconds: 300
  exposed_env_vars: [OPENAI_API_KEY]
  env_file: .env
  allowlist_path: ~/.config/pincer/mount-allowlist.json
  network_allowed_domains: []

groups:
  - jid: "main"
    name: "Main"
    folder: main
    trust_tier: primary
"""

_DEFAULT_GLOBAL_INSTRUCTIONS = """\
# Global Instructions: {project_name}

These instructions apply to every group. Each group also reads its own
CLAUDE.md from its folder.
"""

_DEFAULT_MAIN_INSTRUCTIONS = """\
# Main Group

This is the primary group. It can read the whole project and sees every
scheduled task and available group.
"""


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _init_project(project_root: Path) -> None:
    """Scaffold .pincer/config.yaml plus the global and main group folders."""
    pincer_dir = project_root / ".pincer"

    if pincer_dir.exists():
        print(f"Error: {pincer_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    project_name = project_root.name
    pincer_dir.mkdir(parents=True)
    (pincer_dir / "config.yaml").write_text(_DEFAULT_CONFIG.format(project_name=project_name))

    for folder, template in [
        ("global", _DEFAULT_GLOBAL_INSTRUCTIONS),
        ("main", _DEFAULT_MAIN_INSTRUCTIONS),
    ]:
        group_dir = project_root / "groups" / folder
        group_dir.mkdir(parents=True, exist_ok=True)
        instructions = group_dir / "CLAUDE.md"
        if not instructions.exists():
            instructions.write_text(template.format(project_name=project_name))

    print(f"Initialized Pincer project at {pincer_dir}")
    print()
    print("Next steps:")
    print(f"  1. Review {pincer_dir / 'config.yaml'}")
    print("  2. Create ~/.config/pincer/mount-allowlist.json to allow extra mounts")
    print("  3. Set PINCER_AGENT_BACKEND=module:callable for the agent")
    print(f"  4. Run: pincer run --project-root {project_root} --group main --prompt 'hello'")


def _load(project_root: Path):
    from pincer.config import load_config

    try:
        return load_config(project_root)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print("Run 'pincer init' to create one, or specify --project-root", file=sys.stderr)
        sys.exit(1)
    except ValueError as exc:
        print(f"Error: invalid config: {exc}", file=sys.stderr)
        sys.exit(1)


def _run(args) -> int:
    from pincer.invoker import Invoker
    from pincer.models import ScheduledTask

    config = _load(args.project_root)
    group = config.get_group(args.group)
    if group is None:
        print(f"Error: unknown group folder {args.group!r}", file=sys.stderr)
        return 1

    tasks: list[ScheduledTask] = []
    if args.tasks:
        raw = json.loads(Path(args.tasks).read_text())
        tasks = [ScheduledTask.model_validate(item) for item in raw]

    invoker = Invoker.from_config(config, args.project_root.resolve())
    result = asyncio.run(
        invoker.invoke(
            group,
            args.prompt,
            tasks=tasks,
            is_scheduled_task=args.scheduled,
            session_id=args.session_id,
        )
    )
    print(result.model_dump_json(by_alias=True, exclude_none=True, indent=2))
    return 0 if result.ok else 1


def _mounts(args) -> int:
    from pincer.sandbox.allowlist import MountAllowlist
    from pincer.sandbox.errors import PolicyViolation
    from pincer.sandbox.mounts import MountResolver

    config = _load(args.project_root)
    group = config.get_group(args.group)
    if group is None:
        print(f"Error: unknown group folder {args.group!r}", file=sys.stderr)
        return 1

    layout = config.layout(args.project_root.resolve())
    resolver = MountResolver(layout, MountAllowlist.load(config.sandbox.allowlist_path))
    try:
        mounts = resolver.resolve_mounts(
            group.folder,
            group.trust_tier,
            group.container_config.additional_mounts,
            allow_read_write_extras=group.container_config.allow_read_write_extras,
        )
    except PolicyViolation as exc:
        print(f"Mount policy violation: {exc}", file=sys.stderr)
        return 1

    for mount in mounts:
        print(mount.describe())
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="pincer",
        description="Pincer: sandboxed agent execution with per-group trust boundaries",
    )

    subparsers = parser.add_subparsers(dest="command")

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--project-root",
            type=Path,
            default=Path.cwd(),
            help="Path to the project root (default: current directory)",
        )
        sub.add_argument(
            "--log-level",
            default="INFO",
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Logging level (default: INFO)",
        )

    # pincer init
    init_parser = subparsers.add_parser("init", help="Initialize a new Pincer project")
    add_common(init_parser)

    # pincer run
    run_parser = subparsers.add_parser("run", help="Run one prompt in a group's sandbox")
    add_common(run_parser)
    run_parser.add_argument("--group", required=True, help="Group folder to run as")
    run_parser.add_argument("--prompt", required=True, help="Prompt text")
    run_parser.add_argument("--session-id", help="Resume this session instead of the stored one")
    run_parser.add_argument(
        "--scheduled", action="store_true", help="Mark the run as a scheduled task"
    )
    run_parser.add_argument("--tasks", help="JSON file with the current scheduled tasks")

    # pincer mounts
    mounts_parser = subparsers.add_parser("mounts", help="Show the resolved mounts for a group")
    add_common(mounts_parser)
    mounts_parser.add_argument("--group", required=True, help="Group folder")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args.log_level)

    if args.command == "init":
        _init_project(args.project_root)
        return

    if args.command == "run":
        sys.exit(_run(args))

    if args.command == "mounts":
        sys.exit(_mounts(args))


if __name__ == "__main__":
    main()
