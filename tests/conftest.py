"""Pytest configuration and fixtures for graphlint tests."""

import copy
import json
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Sequence

import pytest

from graphlint.config import DEFAULT_CONFIG, Config, config_from_dict
from graphlint.models import FunctionInfo


def summary_response(purpose: str = "does things", **extra) -> str:
    """JSON text of a valid summary pass response."""
    payload = {
        "purpose": purpose,
        "behavior": extra.pop("behavior", f"behavior of {purpose}"),
        "invariants": extra.pop("invariants", []),
        "security": extra.pop("security", []),
    }
    payload.update(extra)
    return json.dumps(payload)


def findings_response(*issues: Dict) -> str:
    """JSON text of a finding pass response."""
    return json.dumps({"issues": list(issues)})


def make_function(node_id: str, code: str = "", start_line: int = 1, file_path: str = "") -> FunctionInfo:
    name = node_id.rsplit(".", 1)[-1]
    return FunctionInfo(
        node_id=node_id,
        name=name,
        file_path=file_path or f"{name.lower()}.go",
        start_line=start_line,
        code=code or f"func {name}() {{\n\treturn\n}}",
        signature=f"func {name}()",
    )


def make_functions(graph: Dict[str, Sequence[str]]) -> Dict[str, FunctionInfo]:
    return {node_id: make_function(node_id) for node_id in graph}


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, temp_dir: Path):
    """Keep tests away from the user's API key and home cache."""
    monkeypatch.delenv("GRAPHLINT_API_KEY", raising=False)
    monkeypatch.setitem(DEFAULT_CONFIG["cache"], "dir", str(temp_dir / "cache"))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def make_config(temp_dir: Path):
    """Factory for configs with a chosen list of passes and a temp cache."""

    def _make(passes: Sequence[str] = ("summary", "security"), **sections) -> Config:
        data = copy.deepcopy(DEFAULT_CONFIG)
        data["cache"]["dir"] = str(temp_dir / "cache")
        data["output"]["json"] = str(temp_dir / "report.json")
        data["analyses"] = [
            {"name": name, "prompt": f"builtin:{name}", "enabled": True} for name in passes
        ]
        for section, values in sections.items():
            data[section].update(values)
        return config_from_dict(data)

    return _make


@pytest.fixture
def chain_graph() -> Dict[str, List[str]]:
    """A -> B -> C, no cycles."""
    return {"A": ["B"], "B": ["C"], "C": []}


@pytest.fixture
def cyclic_graph() -> Dict[str, List[str]]:
    """A -> B -> C -> A plus D -> A."""
    return {"A": ["B"], "B": ["C"], "C": ["A"], "D": ["A"]}


@pytest.fixture
def sample_bundle(temp_dir: Path) -> Path:
    """A small bundle with a recursive pair and an external callee."""
    payload = {
        "functions": [
            {
                "node_id": "pkg.Load",
                "name": "Load",
                "file_path": "load.go",
                "start_line": 10,
                "code": "func Load(path string) error {\n\tdata, _ := os.ReadFile(path)\n\treturn parse(data)\n}",
                "signature": "func Load(path string) error",
            },
            {
                "node_id": "pkg.parse",
                "name": "parse",
                "file_path": "parse.go",
                "start_line": 3,
                "code": "func parse(b []byte) error {\n\treturn walk(b)\n}",
            },
            {
                "node_id": "pkg.walk",
                "name": "walk",
                "file_path": "parse.go",
                "start_line": 8,
                "code": "func walk(b []byte) error {\n\treturn parse(b[1:])\n}",
            },
        ],
        "calls": {
            "pkg.Load": ["pkg.parse", "os.ReadFile"],
            "pkg.parse": ["pkg.walk"],
            "pkg.walk": ["pkg.parse"],
        },
        "external": [
            {
                "node_id": "os.ReadFile",
                "package": "os",
                "name": "ReadFile",
                "signature": "func(name string) ([]byte, error)",
            }
        ],
    }
    path = temp_dir / "bundle.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path
