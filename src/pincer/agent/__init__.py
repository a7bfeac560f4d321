"""In-sandbox side of Pincer: agent harness, workspace tools, path guard."""

from pincer.agent.harness import AgentContext, run_agent
from pincer.agent.path_guard import PathDenied, allowed_roots, resolve_path
from pincer.agent.session import FileSession
from pincer.agent.tools import WorkspaceTools

__all__ = [
    "AgentContext",
    "FileSession",
    "PathDenied",
    "WorkspaceTools",
    "allowed_roots",
    "resolve_path",
    "run_agent",
]
