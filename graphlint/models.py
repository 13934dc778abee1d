"""Core data models shared by unit building, scheduling and run state."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Tuple

SEVERITIES = ("critical", "important", "minor")
TOP_SEVERITY = "critical"


@dataclass
class FunctionInfo:
    """Source payload for one call graph node, as supplied by extraction."""
    node_id: str
    name: str
    file_path: str
    start_line: int
    code: str
    package: str = ""
    receiver: str = ""
    signature: str = ""
    docstring: str = ""

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "FunctionInfo":
        return cls(
            node_id=payload["node_id"],
            name=payload.get("name") or payload["node_id"].rsplit(".", 1)[-1],
            file_path=payload.get("file_path", ""),
            start_line=int(payload.get("start_line", 1)),
            code=payload.get("code", ""),
            package=payload.get("package", ""),
            receiver=payload.get("receiver", ""),
            signature=payload.get("signature", ""),
            docstring=payload.get("docstring", ""),
        )


@dataclass
class ExternalFunc:
    """Shallow metadata about a callee that is not defined internally."""
    node_id: str
    name: str
    package: str = ""
    signature: str = ""
    docstring: str = ""

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ExternalFunc":
        return cls(
            node_id=payload["node_id"],
            name=payload.get("name") or payload["node_id"].rsplit(".", 1)[-1],
            package=payload.get("package", ""),
            signature=payload.get("signature", ""),
            docstring=payload.get("docstring", ""),
        )


@dataclass(frozen=True)
class AnalysisUnit:
    """One strongly connected component of the call graph.

    ``members`` are kept in sorted node id order and ``dependencies`` holds
    the sorted ids of other units called from any member.
    """
    id: str
    members: Tuple[FunctionInfo, ...]
    dependencies: Tuple[str, ...] = ()

    @property
    def member_ids(self) -> List[str]:
        return [fn.node_id for fn in self.members]

    @property
    def is_recursive_group(self) -> bool:
        return len(self.members) > 1


@dataclass
class Position:
    """Represents a location in source code."""
    file_path: str
    line: int
    column: int = 0

    def __str__(self) -> str:
        return f"{self.file_path}:{self.line}"


@dataclass
class Summary:
    """Semantic digest of a unit, consumed by the units that call it."""
    purpose: str
    behavior: str
    invariants: List[str] = field(default_factory=list)
    security: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def canonical_json(self) -> str:
        """Stable serialization used for fingerprints and cache payloads."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Summary":
        return cls(
            purpose=payload.get("purpose", ""),
            behavior=payload.get("behavior", ""),
            invariants=list(payload.get("invariants") or []),
            security=list(payload.get("security") or []),
        )


@dataclass
class Finding:
    position: Position
    severity: str
    category: str
    message: str
    suggestion: str = ""
    function: str = ""
    attributed_by_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Finding":
        return cls(
            position=Position(**payload["position"]),
            severity=payload["severity"],
            category=payload["category"],
            message=payload["message"],
            suggestion=payload.get("suggestion", ""),
            function=payload.get("function", ""),
            attributed_by_fallback=bool(payload.get("attributed_by_fallback", False)),
        )


@dataclass
class FunctionRef:
    """Member metadata kept in a result, without the body."""
    node_id: str
    name: str
    signature: str
    position: Position

    @classmethod
    def from_function(cls, fn: FunctionInfo) -> "FunctionRef":
        return cls(
            node_id=fn.node_id,
            name=fn.name,
            signature=fn.signature,
            position=Position(fn.file_path, fn.start_line),
        )


@dataclass
class UnitResult:
    """Accumulated oracle output for one analysis unit."""
    unit_id: str
    summary: Summary
    functions: List[FunctionRef] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)
    cached: bool = False

    @property
    def has_top_severity(self) -> bool:
        return any(f.severity == TOP_SEVERITY for f in self.findings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "functions": [asdict(fn) for fn in self.functions],
            "summary": self.summary.to_dict(),
            "findings": [f.to_dict() for f in self.findings],
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "UnitResult":
        return cls(
            unit_id=payload["unit_id"],
            summary=Summary.from_dict(payload["summary"]),
            functions=[
                FunctionRef(
                    node_id=fn["node_id"],
                    name=fn["name"],
                    signature=fn.get("signature", ""),
                    position=Position(**fn["position"]),
                )
                for fn in payload.get("functions", [])
            ],
            findings=[Finding.from_dict(f) for f in payload.get("findings", [])],
            cached=bool(payload.get("cached", False)),
        )
