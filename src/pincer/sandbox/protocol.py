"""Output framing shared by the host runner and the in-sandbox harness.

The agent writes three lines to stdout::

    ---PINCER_OUTPUT_START---
    {"status": "success", "result": "...", "newSessionId": "..."}
    ---PINCER_OUTPUT_END---

Anything else on stdout is free-form.  Changing the markers is a breaking
protocol change.
"""

from __future__ import annotations

from pydantic import ValidationError

from pincer.models import ExecutionResult
from pincer.sandbox.errors import OutputDecodeError

OUTPUT_START_MARKER = "---PINCER_OUTPUT_START---"
OUTPUT_END_MARKER = "---PINCER_OUTPUT_END---"


def encode_frame(result: ExecutionResult) -> str:
    return "\n".join([OUTPUT_START_MARKER, result.to_wire(), OUTPUT_END_MARKER]) + "\n"


def extract_marked_payload(stdout: str) -> str | None:
    """Return the text between the markers, or None if the frame is absent."""
    start = stdout.find(OUTPUT_START_MARKER)
    if start == -1:
        return None
    end = stdout.find(OUTPUT_END_MARKER, start + len(OUTPUT_START_MARKER))
    if end == -1:
        return None
    return stdout[start + len(OUTPUT_START_MARKER) : end].strip()


def extract_last_line(stdout: str) -> str | None:
    """Fallback for agents that predate the markers: the last non-empty line."""
    for line in reversed(stdout.splitlines()):
        if line.strip():
            return line.strip()
    return None


def parse_result(payload: str) -> ExecutionResult:
    try:
        return ExecutionResult.model_validate_json(payload)
    except ValidationError as exc:
        raise OutputDecodeError(f"invalid response payload: {exc.errors()[0]['msg']}") from exc


def decode_output(stdout: str) -> ExecutionResult:
    """Decode the agent's response: marker frame first, last line second.

    Raises:
        OutputDecodeError: if neither strategy yields a valid response.
    """
    payload = extract_marked_payload(stdout)
    if payload is None:
        payload = extract_last_line(stdout)
    if payload is None:
        raise OutputDecodeError("agent produced no output")
    return parse_result(payload)
