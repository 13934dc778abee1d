"""Loading of graph bundles produced by an extraction tool.

A bundle is a JSON document::

    {
      "functions": [{"node_id": "pkg.Load", "name": "Load", "file_path": "load.go",
                     "start_line": 12, "code": "...", "signature": "...",
                     "docstring": "..."}],
      "calls": {"pkg.Load": ["pkg.parse", "os.ReadFile"]},
      "external": [{"node_id": "os.ReadFile", "package": "os", "name": "ReadFile",
                    "signature": "func(name string) ([]byte, error)"}]
    }

Callees that are neither functions nor externals are tolerated; they are
unresolved calls and simply never become dependencies.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from .errors import GraphError
from .models import AnalysisUnit, ExternalFunc, FunctionInfo
from .units import external_callees, prepare_units

logger = logging.getLogger(__name__)


@dataclass
class GraphBundle:
    functions: Dict[str, FunctionInfo] = field(default_factory=dict)
    calls: Dict[str, List[str]] = field(default_factory=dict)
    externals: Dict[str, ExternalFunc] = field(default_factory=dict)

    def units(self) -> List[AnalysisUnit]:
        return prepare_units(self.functions, self.calls)

    def unresolved_callees(self) -> List[str]:
        """Callees with neither a source payload nor external metadata."""
        return [c for c in external_callees(self.functions, self.calls) if c not in self.externals]


def bundle_from_dict(payload: Dict) -> GraphBundle:
    try:
        functions = {}
        for entry in payload.get("functions", []):
            fn = FunctionInfo.from_dict(entry)
            if fn.node_id in functions:
                raise GraphError(f"duplicate function '{fn.node_id}' in bundle", details={"node_id": fn.node_id})
            functions[fn.node_id] = fn
        calls = {caller: list(callees) for caller, callees in payload.get("calls", {}).items()}
        externals = {}
        for entry in payload.get("external", []):
            ext = ExternalFunc.from_dict(entry)
            externals[ext.node_id] = ext
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise GraphError(f"malformed graph bundle: {exc}") from exc
    return GraphBundle(functions=functions, calls=calls, externals=externals)


def load_bundle(path: Path) -> GraphBundle:
    """Read a bundle file.

    Raises:
        GraphError: if the file is missing, not JSON, or malformed.
    """
    path = Path(path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise GraphError(f"cannot read graph bundle {path}: {exc}", details={"path": str(path)}) from exc
    except json.JSONDecodeError as exc:
        raise GraphError(f"graph bundle {path} is not valid JSON: {exc}", details={"path": str(path)}) from exc

    bundle = bundle_from_dict(payload)
    unresolved = bundle.unresolved_callees()
    logger.info(
        "Loaded %d function(s), %d external callee(s) from %s",
        len(bundle.functions), len(bundle.externals), path,
    )
    if unresolved:
        logger.debug("%d unresolved callee(s): %s", len(unresolved), ", ".join(unresolved[:20]))
    return bundle
