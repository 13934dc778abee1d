"""Strongly connected component condensation of call graphs.

Components come back leaves first: for every edge ``caller -> callee``
that crosses a component boundary, the callee's component is emitted
before the caller's.  Traversal order is fixed (sorted node ids, sorted
callees) so repeated runs over the same graph produce the same output
no matter how the input mapping was built.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Mapping, Set, Tuple

from .errors import GraphError

logger = logging.getLogger(__name__)

CallGraph = Mapping[str, Iterable[str]]


def validate_graph(graph: CallGraph) -> Dict[str, List[str]]:
    """Return a de-duplicated, sorted copy of *graph*.

    Raises:
        GraphError: if any edge points at a node that is not a key of *graph*.
    """
    adjacency: Dict[str, List[str]] = {}
    unknown: List[Tuple[str, str]] = []
    for caller in sorted(graph):
        callees = sorted(set(graph[caller]))
        for callee in callees:
            if callee not in graph:
                unknown.append((caller, callee))
        adjacency[caller] = callees

    if unknown:
        raise GraphError(
            f"call graph has {len(unknown)} edge(s) to unknown nodes, "
            f"first: {unknown[0][0]} -> {unknown[0][1]}",
            details={"unknown_edges": unknown},
        )
    return adjacency


def condense_graph(graph: CallGraph) -> List[List[str]]:
    """Collapse *graph* into its strongly connected components.

    Uses Tarjan's algorithm with an explicit work stack so deep call chains
    do not hit the interpreter's recursion limit.  Each component is sorted.
    """
    adjacency = validate_graph(graph)

    index_of: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    components: List[List[str]] = []
    counter = 0

    def visit(node: str) -> None:
        nonlocal counter
        index_of[node] = lowlink[node] = counter
        counter += 1
        stack.append(node)
        on_stack.add(node)

    for root in adjacency:
        if root in index_of:
            continue

        visit(root)
        work: List[Tuple[str, Iterator[str]]] = [(root, iter(adjacency[root]))]
        while work:
            node, callees = work[-1]
            descended = False
            for callee in callees:
                if callee not in index_of:
                    visit(callee)
                    work.append((callee, iter(adjacency[callee])))
                    descended = True
                    break
                if callee in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[callee])
            if descended:
                continue

            work.pop()
            if lowlink[node] == index_of[node]:
                component: List[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(sorted(component))
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])

    logger.debug(
        "Condensed %d node(s) into %d component(s)", len(adjacency), len(components),
    )
    return components
