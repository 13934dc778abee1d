"""Turn condensed call graph components into immutable analysis units."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Sequence

from .condense import CallGraph, condense_graph
from .errors import GraphError
from .models import AnalysisUnit, FunctionInfo

logger = logging.getLogger(__name__)

UNIT_ID_SEPARATOR = "+"


def unit_id_for(component: Sequence[str]) -> str:
    """Deterministic id: the bare node id, or sorted ids joined with ``+``."""
    if len(component) == 1:
        return component[0]
    return UNIT_ID_SEPARATOR.join(sorted(component))


def internal_graph(
    functions: Mapping[str, FunctionInfo], graph: CallGraph,
) -> Dict[str, List[str]]:
    """Restrict *graph* to nodes that have a source payload.

    Edges to callees without a payload are dropped and every internal node
    gets an entry, even when it calls nothing.
    """
    restricted: Dict[str, List[str]] = {node_id: [] for node_id in functions}
    for caller, callees in graph.items():
        if caller not in functions:
            continue
        restricted[caller] = sorted({c for c in callees if c in functions})
    return restricted


def external_callees(
    functions: Mapping[str, FunctionInfo], graph: CallGraph,
) -> List[str]:
    """Sorted ids of callees that are called but not defined internally."""
    external = set()
    for caller, callees in graph.items():
        if caller not in functions:
            continue
        external.update(c for c in callees if c not in functions)
    return sorted(external)


def build_units(
    components: Iterable[Sequence[str]],
    graph: CallGraph,
    functions: Mapping[str, FunctionInfo],
) -> List[AnalysisUnit]:
    """Build one :class:`AnalysisUnit` per component, preserving order.

    Args:
        components: Leaves-first components from :func:`condense_graph`.
        graph: The call graph the components were computed from. Edges to
            nodes outside every component are skipped.
        functions: Source payload per node id.

    Raises:
        GraphError: if a component member has no source payload.
    """
    components = [list(c) for c in components]

    owner: Dict[str, str] = {}
    for component in components:
        uid = unit_id_for(component)
        for node_id in component:
            owner[node_id] = uid

    units: List[AnalysisUnit] = []
    for component in components:
        uid = owner[component[0]]
        members = []
        for node_id in sorted(component):
            fn = functions.get(node_id)
            if fn is None:
                raise GraphError(
                    f"no source payload for node '{node_id}'",
                    details={"node_id": node_id, "unit_id": uid},
                )
            members.append(fn)

        dependencies = set()
        for node_id in component:
            for callee in graph.get(node_id, ()):
                target = owner.get(callee)
                if target is None or target == uid:
                    continue
                dependencies.add(target)

        units.append(
            AnalysisUnit(id=uid, members=tuple(members), dependencies=tuple(sorted(dependencies)))
        )
    return units


def prepare_units(
    functions: Mapping[str, FunctionInfo], graph: CallGraph,
) -> List[AnalysisUnit]:
    """Condense the internal part of *graph* and build ordered units."""
    restricted = internal_graph(functions, graph)
    units = build_units(condense_graph(restricted), restricted, functions)
    logger.info(
        "Built %d analysis unit(s) from %d function(s)", len(units), len(functions),
    )
    return units


def dependency_layers(units: Sequence[AnalysisUnit]) -> List[List[AnalysisUnit]]:
    """Group *units* so no unit depends on another unit of the same layer.

    Layer ``n`` holds the units whose deepest dependency sits in layer
    ``n - 1``.  Units keep their relative order inside a layer.
    """
    depth: Dict[str, int] = {}
    layers: List[List[AnalysisUnit]] = []
    for unit in units:
        missing = [d for d in unit.dependencies if d not in depth]
        if missing:
            raise GraphError(
                f"unit '{unit.id}' depends on '{missing[0]}' which is not ordered before it",
                details={"unit_id": unit.id, "missing": missing},
            )
        level = 1 + max((depth[d] for d in unit.dependencies), default=-1)
        depth[unit.id] = level
        while len(layers) <= level:
            layers.append([])
        layers[level].append(unit)
    return layers
