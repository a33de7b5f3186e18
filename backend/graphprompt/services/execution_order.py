"""
Deterministic topological ordering of a graph's outer nodes.

Kahn's algorithm, seeded and tie-broken by the graph's candidate order so an
unchanged graph always yields the same sequence. Group nodes are ordered as
single opaque nodes; the compiler expands them afterwards.
"""

from __future__ import annotations

from collections import deque
from typing import Any

from graphprompt.errors import CyclicGraph
from graphprompt.graph.graph import Graph
from graphprompt.graph.nodes import GraphNode


def _dependency_graph(
    candidates: list[GraphNode],
    graph: Graph,
) -> tuple[dict[Any, int], dict[Any, list[Any]]]:
    """
    Returns:
        in_degree: count of distinct upstream nodes for each node
        adjacency: node -> downstream nodes, in link order
    """
    in_degree: dict[Any, int] = {node.id: 0 for node in candidates}
    adjacency: dict[Any, list[Any]] = {node.id: [] for node in candidates}
    seen: set[tuple[Any, Any]] = set()

    for node in candidates:
        for slot in node.inputs:
            if slot.link is None:
                continue
            link = graph.links.get(slot.link)
            if link is None:
                continue
            origin = graph.get_node_by_id(link.origin_id)
            if origin is None or origin.id not in in_degree:
                continue
            # Several links between the same pair count as one dependency.
            edge = (origin.id, node.id)
            if edge in seen:
                continue
            seen.add(edge)
            adjacency[origin.id].append(node.id)
            in_degree[node.id] += 1

    return in_degree, adjacency


def compute_execution_order(graph: Graph) -> list[GraphNode]:
    """
    Order the graph's nodes so every producer precedes its consumers.

    Raises CyclicGraph listing the nodes that could not be ordered.
    """
    candidates = graph.nodes_in_topological_candidate_order()
    by_id = {node.id: node for node in candidates}
    rank = {node.id: index for index, node in enumerate(candidates)}
    in_degree, adjacency = _dependency_graph(candidates, graph)

    queue: deque[Any] = deque(node.id for node in candidates if in_degree[node.id] == 0)
    order: list[GraphNode] = []

    while queue:
        node_id = queue.popleft()
        order.append(by_id[node_id])
        for downstream in sorted(adjacency[node_id], key=rank.__getitem__):
            in_degree[downstream] -= 1
            if in_degree[downstream] == 0:
                queue.append(downstream)

    if len(order) != len(candidates):
        blocked = [node.id for node in candidates if in_degree[node.id] > 0]
        raise CyclicGraph(blocked)

    return order
