"""File-backed conversation sessions.

A session is a JSON list of ``{"role", "text"}`` messages at
``<sessions dir>/<session id>.json``.  Every append rewrites the file, since
the agent can be SIGKILLed at any moment on timeout and gets no chance to
flush.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import uuid
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]{0,127}$")


class StoredMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    text: str


class FileSession:
    def __init__(self, sessions_dir: Path, session_id: str | None = None) -> None:
        if session_id is not None and not _SESSION_ID_PATTERN.fullmatch(session_id):
            raise ValueError(f"invalid session id: {session_id!r}")
        sessions_dir.mkdir(parents=True, exist_ok=True)
        self.session_id = session_id or str(uuid.uuid4())
        self.path = sessions_dir / f"{self.session_id}.json"

    def messages(self, limit: int | None = None) -> list[StoredMessage]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text())
        except json.JSONDecodeError:
            logger.warning("Session file %s is corrupt -- starting empty", self.path)
            return []
        if not isinstance(raw, list):
            return []
        stored: list[StoredMessage] = []
        for item in raw:
            try:
                stored.append(StoredMessage.model_validate(item))
            except ValidationError:
                continue
        return stored[-limit:] if limit else stored

    def append(self, role: Literal["user", "assistant", "system"], text: str) -> None:
        text = text.strip()
        if not text:
            return
        stored = self.messages()
        stored.append(StoredMessage(role=role, text=text))
        self._write(stored)

    def pop(self) -> StoredMessage | None:
        stored = self.messages()
        if not stored:
            return None
        item = stored.pop()
        self._write(stored)
        return item

    def clear(self) -> None:
        self._write([])

    def _write(self, items: list[StoredMessage]) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        with os.fdopen(fd, "w") as fh:
            json.dump([m.model_dump() for m in items], fh, indent=2)
        os.replace(tmp, self.path)
