"""Tests for analysis unit construction."""

import pytest

from conftest import make_function, make_functions
from graphlint.errors import GraphError
from graphlint.models import AnalysisUnit
from graphlint.units import (
    build_units,
    dependency_layers,
    external_callees,
    internal_graph,
    prepare_units,
    unit_id_for,
)


class TestUnitIds:
    """Tests for unit_id_for."""

    def test_singleton_uses_node_id(self):
        assert unit_id_for(["pkg.Load"]) == "pkg.Load"

    def test_group_is_sorted_and_joined(self):
        assert unit_id_for(["c", "a", "b"]) == "a+b+c"


class TestPrepareUnits:
    """Tests for prepare_units and build_units."""

    def test_cycle_and_caller(self, cyclic_graph):
        """The cycle becomes one unit that its caller depends on."""
        units = prepare_units(make_functions(cyclic_graph), cyclic_graph)

        assert [u.id for u in units] == ["A+B+C", "D"]
        assert units[0].member_ids == ["A", "B", "C"]
        assert units[0].is_recursive_group
        assert units[0].dependencies == ()
        assert units[1].dependencies == ("A+B+C",)
        assert not units[1].is_recursive_group

    def test_chain(self, chain_graph):
        """A chain yields singleton units, callees first."""
        units = prepare_units(make_functions(chain_graph), chain_graph)

        assert [u.id for u in units] == ["C", "B", "A"]
        assert units[1].dependencies == ("C",)
        assert units[2].dependencies == ("B",)

    def test_no_self_dependency(self):
        """Calls inside a unit never become dependencies."""
        graph = {"f": ["f"], "a": ["b"], "b": ["a"]}
        units = prepare_units(make_functions(graph), graph)

        for unit in units:
            assert unit.id not in unit.dependencies

    def test_dependencies_sorted_and_unique(self):
        """Several edges into the same unit produce one sorted entry."""
        graph = {"main": ["z", "x", "y", "x"], "x": ["y"], "y": ["x"], "z": []}
        units = prepare_units(make_functions(graph), graph)

        main = units[-1]
        assert main.id == "main"
        assert main.dependencies == ("x+y", "z")

    def test_external_callees_are_not_dependencies(self):
        """Callees without a source payload are dropped from unit building."""
        graph = {"a": ["b", "fmt.Println"], "b": []}
        functions = make_functions({"a": [], "b": []})
        units = prepare_units(functions, graph)

        assert [u.id for u in units] == ["b", "a"]
        assert units[1].dependencies == ("b",)

    def test_missing_payload_raises(self):
        """A component member without source is a graph error."""
        with pytest.raises(GraphError) as excinfo:
            build_units([["a"], ["b"]], {"a": [], "b": []}, {"a": make_function("a")})
        assert excinfo.value.details["node_id"] == "b"

    def test_units_are_immutable(self, chain_graph):
        """Units cannot be modified after construction."""
        unit = prepare_units(make_functions(chain_graph), chain_graph)[0]
        with pytest.raises(AttributeError):
            unit.id = "other"


class TestGraphHelpers:
    """Tests for internal_graph and external_callees."""

    def test_internal_graph(self):
        graph = {"a": ["b", "os.Open"], "os.Open": ["x"]}
        functions = make_functions({"a": [], "b": []})

        assert internal_graph(functions, graph) == {"a": ["b"], "b": []}

    def test_external_callees(self):
        graph = {"a": ["os.Open", "b", "fmt.Sprintf"], "b": ["os.Open"]}
        functions = make_functions({"a": [], "b": []})

        assert external_callees(functions, graph) == ["fmt.Sprintf", "os.Open"]


class TestDependencyLayers:
    """Tests for dependency_layers."""

    def test_layers(self):
        """Units only depend on units of earlier layers."""
        graph = {"a": ["c"], "b": ["c"], "c": [], "d": ["a", "b"], "e": []}
        units = prepare_units(make_functions(graph), graph)
        layers = dependency_layers(units)

        ids = [[u.id for u in layer] for layer in layers]
        assert ids == [["c", "e"], ["a", "b"], ["d"]]

    def test_out_of_order_raises(self):
        """A unit listed before its dependency is rejected."""
        fn = make_function("a")
        units = [AnalysisUnit(id="a", members=(fn,), dependencies=("b",))]
        with pytest.raises(GraphError):
            dependency_layers(units)
