"""Resumable run state, result accumulation and checkpoint persistence.

A checkpoint is a plain JSON document.  Aggregates are not trusted from
disk: loading replays every stored unit result through a fresh
:class:`ResultAccumulator`, so counts always agree with the unit results
and a resumed run ends with the same totals as an uninterrupted one.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import StateError
from .models import Summary, UnitResult

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


@dataclass
class RunMetadata:
    generated_at: str = field(default_factory=lambda: datetime.now().isoformat())
    inputs: List[str] = field(default_factory=list)
    config_file: str = ""
    total_units: int = 0
    cache_hits: int = 0


@dataclass
class RunState:
    """Unit id to result for every completed unit, plus aggregates."""
    units: Dict[str, UnitResult] = field(default_factory=dict)
    total_findings: int = 0
    by_severity: Dict[str, int] = field(default_factory=dict)
    by_category: Dict[str, int] = field(default_factory=dict)
    critical_units: List[str] = field(default_factory=list)
    metadata: RunMetadata = field(default_factory=RunMetadata)

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self.units

    def __len__(self) -> int:
        return len(self.units)

    def summaries(self) -> Dict[str, Summary]:
        """Dependency summary lookup, rebuilt purely from recorded results."""
        return {uid: result.summary for uid, result in self.units.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "metadata": {
                "generated_at": self.metadata.generated_at,
                "inputs": list(self.metadata.inputs),
                "config_file": self.metadata.config_file,
                "total_units": self.metadata.total_units,
                "cache_hits": self.metadata.cache_hits,
            },
            "units": {uid: result.to_dict() for uid, result in self.units.items()},
            "summary": {
                "total_findings": self.total_findings,
                "by_severity": dict(self.by_severity),
                "by_category": dict(self.by_category),
                "critical_units": list(self.critical_units),
            },
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RunState":
        version = payload.get("schema_version")
        if version != SCHEMA_VERSION:
            raise StateError(
                f"unsupported checkpoint schema version {version!r}",
                details={"schema_version": version},
            )
        meta = payload.get("metadata", {})
        state = cls(
            metadata=RunMetadata(
                generated_at=meta.get("generated_at", datetime.now().isoformat()),
                inputs=list(meta.get("inputs", [])),
                config_file=meta.get("config_file", ""),
                total_units=int(meta.get("total_units", 0)),
            )
        )
        accumulator = ResultAccumulator(state)
        for unit_id, unit_payload in payload.get("units", {}).items():
            accumulator.record(unit_id, UnitResult.from_dict(unit_payload))
        return state


class ResultAccumulator:
    """Sole writer of a :class:`RunState`."""

    def __init__(self, state: Optional[RunState] = None):
        self.state = state if state is not None else RunState()

    def record(self, unit_id: str, result: UnitResult) -> None:
        """Store *result* and fold its findings into the aggregates.

        Raises:
            StateError: if *unit_id* was already recorded.
        """
        state = self.state
        if unit_id in state.units:
            raise StateError(
                f"unit '{unit_id}' is already recorded", details={"unit_id": unit_id},
            )
        state.units[unit_id] = result
        if result.cached:
            state.metadata.cache_hits += 1

        for finding in result.findings:
            state.total_findings += 1
            state.by_severity[finding.severity] = state.by_severity.get(finding.severity, 0) + 1
            state.by_category[finding.category] = state.by_category.get(finding.category, 0) + 1
        if result.has_top_severity:
            state.critical_units.append(unit_id)


def save_checkpoint(state: RunState, path: Path) -> None:
    """Atomically write *state* as JSON to *path*."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("Checkpoint with %d unit(s) written to %s", len(state), path)


def load_checkpoint(path: Path) -> Optional[RunState]:
    """Load a checkpoint, or return ``None`` when *path* does not exist.

    Raises:
        StateError: if the file exists but is not a valid checkpoint.
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateError(f"checkpoint {path} is not valid JSON: {exc}", details={"path": str(path)}) from exc
    try:
        return RunState.from_dict(payload)
    except (KeyError, TypeError) as exc:
        raise StateError(f"checkpoint {path} is malformed: {exc}", details={"path": str(path)}) from exc
