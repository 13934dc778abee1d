"""Exception hierarchy for graphlint.

Every error carries a human readable message plus a ``details`` dict with
the structured context a caller needs to report or recover from it.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GraphlintError(Exception):
    """Base exception for all graphlint errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class GraphError(GraphlintError):
    """The call graph is malformed (edge to an unknown node, missing payload)."""


class OracleError(GraphlintError):
    """The oracle transport failed or its response could not be decoded."""


class ParseError(OracleError):
    """An oracle response could not be decoded, even after normalization."""

    def __init__(self, reason: str, raw: str, normalized: str):
        super().__init__(
            f"failed to parse oracle response: {reason}\nResponse:\n{raw}",
            details={"reason": reason},
        )
        self.raw = raw
        self.normalized = normalized


class CacheError(GraphlintError):
    """I/O failure on the summary cache. Never fatal for a run."""


class StateError(GraphlintError):
    """RunState was mutated in a way that is not allowed."""


class ConfigError(GraphlintError):
    """Configuration could not be loaded or failed validation."""


class RunCancelled(GraphlintError):
    """The run was cancelled between units; a checkpoint has been written."""

    def __init__(self, completed: int):
        super().__init__(
            f"run cancelled after {completed} completed unit(s)",
            details={"completed": completed},
        )
        self.completed = completed
