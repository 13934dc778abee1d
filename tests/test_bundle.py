"""Tests for graph bundle loading."""

import json
from pathlib import Path

import pytest

from graphlint.bundle import bundle_from_dict, load_bundle
from graphlint.errors import GraphError


class TestLoadBundle:
    """Tests for load_bundle."""

    def test_sample(self, sample_bundle: Path):
        bundle = load_bundle(sample_bundle)

        assert sorted(bundle.functions) == ["pkg.Load", "pkg.parse", "pkg.walk"]
        assert bundle.functions["pkg.Load"].start_line == 10
        assert bundle.externals["os.ReadFile"].package == "os"
        assert bundle.unresolved_callees() == []

    def test_units(self, sample_bundle: Path):
        units = load_bundle(sample_bundle).units()

        assert [u.id for u in units] == ["pkg.parse+pkg.walk", "pkg.Load"]
        assert units[1].dependencies == ("pkg.parse+pkg.walk",)

    def test_unresolved_callees(self):
        bundle = bundle_from_dict({
            "functions": [{"node_id": "a", "code": "a()"}],
            "calls": {"a": ["mystery.Call"]},
        })
        assert bundle.unresolved_callees() == ["mystery.Call"]
        assert [u.id for u in bundle.units()] == ["a"]

    def test_name_defaults_to_last_segment(self):
        bundle = bundle_from_dict({"functions": [{"node_id": "pkg.Server.Start"}]})
        assert bundle.functions["pkg.Server.Start"].name == "Start"

    def test_missing_file(self, temp_dir: Path):
        with pytest.raises(GraphError):
            load_bundle(temp_dir / "absent.json")

    def test_invalid_json(self, temp_dir: Path):
        path = temp_dir / "bundle.json"
        path.write_text("{")
        with pytest.raises(GraphError):
            load_bundle(path)

    def test_duplicate_function(self):
        with pytest.raises(GraphError) as excinfo:
            bundle_from_dict({"functions": [{"node_id": "a"}, {"node_id": "a"}]})
        assert excinfo.value.details["node_id"] == "a"

    def test_missing_node_id(self, temp_dir: Path):
        path = temp_dir / "bundle.json"
        path.write_text(json.dumps({"functions": [{"name": "x"}]}))
        with pytest.raises(GraphError):
            load_bundle(path)
