"""Tests for SandboxRunner using real agent subprocesses.

Each test writes a small Python "agent" script; the runner spawns it with
the sandbox runtime disabled (or replaced by a pass-through fake), feeds the
request on stdin and decodes what comes back.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import pytest

from pincer.models import AdditionalMount, TrustTier
from pincer.sandbox.allowlist import MountAllowlist
from pincer.sandbox.config import SandboxConfig
from pincer.sandbox.mounts import MountResolver
from pincer.sandbox.runner import BoundedBuffer, SandboxRunner
from pincer.sandbox.runtime import SETTINGS_FILENAME

from .conftest import make_group, request_for

FRAMED_AGENT = """\
import json, os, sys
req = json.loads(sys.stdin.read())
print("booting agent")
print('{"status": "error", "error": "decoy"}')
print("---PINCER_OUTPUT_START---")
print(json.dumps({
    "status": "success",
    "result": "got " + req["prompt"],
    "newSessionId": req.get("sessionId") or "session-1",
}))
print("---PINCER_OUTPUT_END---")
print("shutting down")
"""

ENV_AGENT = """\
import json, os, sys
req = json.loads(sys.stdin.read())
payload = {
    "cwd": os.getcwd(),
    "group": os.environ["PINCER_GROUP_DIR"],
    "project": os.environ["PINCER_PROJECT_DIR"],
    "ipc": os.environ["PINCER_IPC_DIR"],
    "request": req,
}
print(json.dumps({"status": "success", "result": json.dumps(payload)}))
"""

MARKER_AGENT = """\
import os, pathlib, sys
sys.stdin.read()
pathlib.Path(os.environ["PINCER_GROUP_DIR"], "ran.txt").write_text("yes")
print('{"status": "success", "result": "ran"}')
"""


def _runner(config: SandboxConfig, layout, allowlist: MountAllowlist | None = None) -> SandboxRunner:
    return SandboxRunner(config, layout, MountResolver(layout, allowlist or MountAllowlist.empty()))


async def _process_gone(pid: int, timeout: float = 5.0) -> bool:
    """Wait until ``pid`` no longer exists (or is only a zombie awaiting reaping)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        try:
            state = Path(f"/proc/{pid}/stat").read_text().rsplit(")", 1)[1].split()[0]
        except (OSError, IndexError):
            state = ""
        if state == "Z":
            return True
        await asyncio.sleep(0.05)
    return False


# -- Decoding ---------------------------------------------------------------


class TestDecoding:
    async def test_framed_output(self, layout, family_group, agent_script):
        runner = _runner(agent_script(FRAMED_AGENT), layout)
        result = await runner.execute(family_group, request_for(family_group, "ping"))
        assert result.ok
        assert result.result == "got ping"
        assert result.new_session_id == "session-1"

    async def test_session_passed_through(self, layout, family_group, agent_script):
        runner = _runner(agent_script(FRAMED_AGENT), layout)
        result = await runner.execute(
            family_group, request_for(family_group, "ping", session_id="resume-me")
        )
        assert result.new_session_id == "resume-me"

    async def test_last_line_fallback(self, layout, family_group, agent_script):
        runner = _runner(
            agent_script(
                """\
                import sys
                sys.stdin.read()
                print("some log line")
                print('{"status": "success", "result": "legacy"}')
                """
            ),
            layout,
        )
        result = await runner.execute(family_group, request_for(family_group))
        assert result.result == "legacy"

    async def test_decode_failure(self, layout, family_group, agent_script):
        runner = _runner(
            agent_script(
                """\
                import sys
                sys.stdin.read()
                print("I forgot the protocol")
                """
            ),
            layout,
        )
        result = await runner.execute(family_group, request_for(family_group))
        assert result.status == "error"
        assert "Failed to parse agent output" in result.error
        assert "I forgot the protocol" in result.error

    async def test_agent_error_status_passed_through(self, layout, family_group, agent_script):
        runner = _runner(
            agent_script(
                """\
                import sys
                sys.stdin.read()
                print('{"status": "error", "error": "model said no", "newSessionId": "s9"}')
                """
            ),
            layout,
        )
        result = await runner.execute(family_group, request_for(family_group))
        assert result.status == "error"
        assert result.error == "model said no"
        assert result.new_session_id == "s9"


# -- Process outcomes -------------------------------------------------------


class TestProcessOutcomes:
    async def test_nonzero_exit(self, layout, family_group, agent_script):
        runner = _runner(
            agent_script(
                """\
                import sys
                sys.stdin.read()
                sys.stderr.write("kaboom\\n")
                print('{"status": "success", "result": "ignored"}')
                sys.exit(3)
                """
            ),
            layout,
        )
        result = await runner.execute(family_group, request_for(family_group))
        assert result.status == "error"
        assert "exited with code 3" in result.error
        assert "kaboom" in result.error

    async def test_timeout_kills_process(self, layout, agent_script):
        group = make_group("family", timeout=1)
        runner = _runner(
            agent_script(
                """\
                import os, pathlib, sys, time
                pathlib.Path(os.environ["PINCER_GROUP_DIR"], "pid.txt").write_text(str(os.getpid()))
                sys.stdout.write("partial output\\n")
                sys.stdout.flush()
                time.sleep(60)
                """
            ),
            layout,
        )
        result = await runner.execute(group, request_for(group))
        assert result.status == "error"
        assert "timed out after 1s" in result.error

        pid = int((layout.group_dir("family") / "pid.txt").read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    async def test_timeout_kills_tool_commands(self, layout, agent_script):
        group = make_group("family", timeout=2)
        runner = _runner(
            agent_script(
                """\
                import asyncio, os, pathlib, sys
                from pincer.agent.tools import BashParams, WorkspaceTools
                sys.stdin.read()
                group_dir = pathlib.Path(os.environ["PINCER_GROUP_DIR"])
                tools = WorkspaceTools(group_dir, [group_dir], shell_timeout=60)
                asyncio.run(tools.bash(BashParams(command="sleep 30 & echo $! > sleeper.pid; wait")))
                """
            ),
            layout,
        )
        result = await runner.execute(group, request_for(group))
        assert result.status == "error"
        assert "timed out after 2s" in result.error

        pid = int((layout.group_dir("family") / "sleeper.pid").read_text())
        assert await _process_gone(pid)

    async def test_output_truncated_but_drained(self, layout, family_group, agent_script):
        config = agent_script(
            """\
            import sys
            sys.stdin.read()
            print("---PINCER_OUTPUT_START---")
            print('{"status": "success", "result": "early frame"}')
            print("---PINCER_OUTPUT_END---")
            sys.stdout.write("x" * (1024 * 1024))
            sys.stdout.flush()
            """,
            max_output_bytes=64 * 1024,
        )
        runner = _runner(config, layout)
        result = await runner.execute(family_group, request_for(family_group))
        assert result.ok
        assert result.result == "early frame"

        await runner.flush_run_logs()
        logs = list(layout.logs_dir("family").glob("run-*.log"))
        assert len(logs) == 1
        assert "Stdout Truncated: True" in logs[0].read_text()

    async def test_spawn_failure(self, layout, family_group):
        config = SandboxConfig(
            enforce=False,
            runtime_command=["pincer-test-missing-runtime"],
            agent_command=["/nonexistent/pincer-agent"],
            exposed_env_vars=[],
        )
        result = await _runner(config, layout).execute(family_group, request_for(family_group))
        assert result.status == "error"
        assert "Agent spawn error" in result.error

    async def test_enforced_without_runtime(self, layout, family_group, agent_script):
        config = agent_script(MARKER_AGENT, enforce=True)
        result = await _runner(config, layout).execute(family_group, request_for(family_group))
        assert result.status == "error"
        assert "Sandbox setup failed" in result.error
        assert not (layout.group_dir("family") / "ran.txt").exists()

    async def test_fake_runtime_receives_settings(self, tmp_path, layout, family_group, agent_script):
        fake = tmp_path / "bin" / "fake-srt"
        fake.parent.mkdir()
        fake.write_text('#!/bin/sh\nshift 2\nexec "$@"\n')
        fake.chmod(0o755)
        config = agent_script(FRAMED_AGENT, enforce=True, runtime_command=[str(fake)])

        result = await _runner(config, layout).execute(family_group, request_for(family_group))
        assert result.ok

        settings = json.loads((layout.sandbox_dir("family") / SETTINGS_FILENAME).read_text())
        allow_write = settings["filesystem"]["allowWrite"]
        assert os.path.realpath(layout.group_dir("family")) in allow_write
        assert os.path.realpath(layout.global_dir) not in allow_write
        assert os.path.realpath(layout.project_root) not in allow_write


# -- Policy -----------------------------------------------------------------


class TestPolicy:
    async def test_mount_violation_prevents_spawn(self, layout, shared_root, agent_script):
        group = make_group("family", extras=[AdditionalMount(host_path=str(shared_root / "docs"))])
        runner = _runner(agent_script(MARKER_AGENT), layout)
        result = await runner.execute(group, request_for(group))
        assert result.status == "error"
        assert "Mount policy violation" in result.error
        assert not (layout.group_dir("family") / "ran.txt").exists()

    async def test_allowed_extra_mount_runs(self, layout, shared_root, write_allowlist, agent_script):
        allowlist = write_allowlist({"allowedRoots": [{"path": str(shared_root)}]})
        group = make_group("family", extras=[AdditionalMount(host_path=str(shared_root / "docs"))])
        result = await _runner(agent_script(MARKER_AGENT), layout, allowlist).execute(
            group, request_for(group)
        )
        assert result.ok

    async def test_identity_mismatch(self, layout, family_group, main_group, agent_script):
        runner = _runner(agent_script(MARKER_AGENT), layout)
        forged = request_for(main_group)
        result = await runner.execute(family_group, forged)
        assert result.status == "error"
        assert "identity" in result.error
        assert not (layout.group_dir("family") / "ran.txt").exists()

    async def test_standard_environment(self, layout, family_group, agent_script):
        runner = _runner(agent_script(ENV_AGENT), layout)
        result = await runner.execute(family_group, request_for(family_group, "env please"))
        payload = json.loads(result.result)
        assert os.path.realpath(payload["cwd"]) == os.path.realpath(layout.group_dir("family"))
        assert payload["group"] == str(layout.group_dir("family"))
        assert payload["project"] == ""
        assert payload["ipc"] == str(layout.ipc_dir("family"))
        assert payload["request"]["groupFolder"] == "family"
        assert payload["request"]["isMain"] is False

    async def test_primary_environment(self, layout, main_group, agent_script):
        runner = _runner(agent_script(ENV_AGENT), layout)
        result = await runner.execute(main_group, request_for(main_group))
        assert json.loads(result.result)["project"] == str(layout.project_root)


# -- Run logs and concurrency -----------------------------------------------


class TestRunLogs:
    async def test_failed_run_logged(self, layout, family_group, agent_script):
        runner = _runner(
            agent_script(
                """\
                import sys
                sys.stdin.read()
                sys.stderr.write("fatal: disk on fire\\n")
                sys.exit(2)
                """
            ),
            layout,
        )
        await runner.execute(family_group, request_for(family_group, "private words"))
        await runner.flush_run_logs()

        [log] = list(layout.logs_dir("family").glob("run-*.log"))
        text = log.read_text()
        assert "Exit Code: 2" in text
        assert "State: completed" in text
        assert "disk on fire" in text
        assert "private words" not in text

    async def test_policy_rejection_logged(self, layout, shared_root, agent_script):
        group = make_group("family", extras=[AdditionalMount(host_path=str(shared_root / "docs"))])
        runner = _runner(agent_script(MARKER_AGENT), layout)
        await runner.execute(group, request_for(group))
        await runner.flush_run_logs()
        [log] = list(layout.logs_dir("family").glob("run-*.log"))
        assert "State: policy_rejected" in log.read_text()


class TestConcurrency:
    async def test_same_group_serialized(self, layout, family_group, agent_script):
        config = agent_script(
            """\
            import os, pathlib, sys, time
            sys.stdin.read()
            trace = pathlib.Path(os.environ["PINCER_GROUP_DIR"], "trace.txt")
            with open(trace, "a") as fh:
                fh.write("start\\n")
            time.sleep(0.3)
            with open(trace, "a") as fh:
                fh.write("end\\n")
            print('{"status": "success", "result": "ok"}')
            """
        )
        runner = _runner(config, layout)
        results = await asyncio.gather(
            runner.execute(family_group, request_for(family_group)),
            runner.execute(family_group, request_for(family_group)),
        )
        assert all(r.ok for r in results)
        trace = (layout.group_dir("family") / "trace.txt").read_text().split()
        assert trace == ["start", "end", "start", "end"]


class TestHarnessIntegration:
    async def test_real_harness_round_trip(self, layout, family_group, monkeypatch):
        monkeypatch.setenv("PINCER_AGENT_BACKEND", "pincer.agent.harness:echo_backend")
        config = SandboxConfig(
            enforce=False,
            runtime_command=["pincer-test-missing-runtime"],
            exposed_env_vars=[],
            timeout_seconds=60,
        )
        runner = _runner(config, layout)
        result = await runner.execute(family_group, request_for(family_group, "hello harness"))
        assert result.ok, result.error
        assert result.result == "hello harness"
        assert (layout.sessions_dir("family") / f"{result.new_session_id}.json").exists()
        assert list((layout.group_dir("family") / "conversations").glob("*.md"))


class TestBoundedBuffer:
    def test_truncates_at_limit(self):
        buf = BoundedBuffer(5)
        buf.feed(b"abc")
        buf.feed(b"defg")
        buf.feed(b"more")
        assert buf.text() == "abcde"
        assert buf.size == 5
        assert buf.truncated

    def test_exact_fit_not_truncated(self):
        buf = BoundedBuffer(3)
        buf.feed(b"abc")
        assert not buf.truncated

    def test_invalid_utf8_replaced(self):
        buf = BoundedBuffer(10)
        buf.feed(b"ok\xff")
        assert buf.text() == "ok�"
