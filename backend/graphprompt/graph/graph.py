"""
The editor graph: nodes, links and (de)serialization to a GraphDocument.

The compiler only reads a Graph. Mutations (add/connect/remove) are the
editor's; configure() rebuilds a graph from a document through a node
factory supplied by the loader.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Callable, Iterable

from graphprompt.errors import GraphConfigurationError
from graphprompt.graph.nodes import GraphNode, Link, NodeId
from graphprompt.models.workflow import GraphDocument, SerializedNode

logger = logging.getLogger(__name__)

NodeFactory = Callable[[SerializedNode], GraphNode]


class Graph:
    def __init__(self) -> None:
        self._nodes: dict[NodeId, GraphNode] = {}
        self.links: dict[int, Link] = {}
        self.last_node_id = 0
        self.last_link_id = 0
        self.groups: list[dict[str, Any]] = []
        self.config: dict[str, Any] = {}
        self.extra: dict[str, Any] = {}
        self.version: float = 0.4

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> list[GraphNode]:
        return list(self._nodes.values())

    # -- lookup ------------------------------------------------------------

    def get_node_by_id(self, node_id: NodeId | None) -> GraphNode | None:
        if node_id is None:
            return None
        node = self._nodes.get(node_id)
        if node is not None:
            return node
        # Prompt keys and link arrays may carry the id in the other spelling.
        if isinstance(node_id, str) and node_id.lstrip("-").isdigit():
            return self._nodes.get(int(node_id))
        if isinstance(node_id, int):
            return self._nodes.get(str(node_id))
        return None

    def nodes_in_topological_candidate_order(self) -> list[GraphNode]:
        """Nodes by ascending `order`, insertion order breaking ties."""
        indexed = list(enumerate(self._nodes.values()))
        indexed.sort(key=lambda item: (item[1].order, item[0]))
        return [node for _, node in indexed]

    # -- editing -----------------------------------------------------------

    def add(self, node: GraphNode) -> GraphNode:
        if node.id is None:
            self.last_node_id += 1
            node.id = self.last_node_id
        elif isinstance(node.id, int) and node.id > self.last_node_id:
            self.last_node_id = node.id
        if self.get_node_by_id(node.id) is not None:
            raise ValueError(f"Node id {node.id!r} already exists in graph")
        node.graph = self
        if not node.order:
            node.order = len(self._nodes)
        self._nodes[node.id] = node
        return node

    def remove(self, node: GraphNode) -> None:
        for slot in range(len(node.inputs)):
            self.disconnect_input(node, slot)
        for output in node.outputs:
            for link_id in list(output.links):
                link = self.links.get(link_id)
                target = self.get_node_by_id(link.target_id) if link else None
                if target is not None:
                    self.disconnect_input(target, link.target_slot)
        self._nodes.pop(node.id, None)
        node.graph = None

    def connect(self, origin: GraphNode, origin_slot: int, target: GraphNode, target_slot: int) -> Link:
        """Link an output to an input, replacing the input's previous link."""
        if origin_slot >= len(origin.outputs):
            raise IndexError(f"Node {origin.id} has no output slot {origin_slot}")
        if target_slot >= len(target.inputs):
            raise IndexError(f"Node {target.id} has no input slot {target_slot}")
        self.disconnect_input(target, target_slot)
        self.last_link_id += 1
        link = Link(
            id=self.last_link_id,
            origin_id=origin.id,
            origin_slot=origin_slot,
            target_id=target.id,
            target_slot=target_slot,
            type=origin.outputs[origin_slot].type,
        )
        self.links[link.id] = link
        origin.outputs[origin_slot].links.append(link.id)
        target.inputs[target_slot].link = link.id
        return link

    def disconnect_input(self, target: GraphNode, target_slot: int) -> None:
        slot = target.inputs[target_slot]
        if slot.link is None:
            return
        link = self.links.pop(slot.link, None)
        slot.link = None
        if link is None:
            return
        origin = self.get_node_by_id(link.origin_id)
        if origin is not None and link.origin_slot < len(origin.outputs):
            links = origin.outputs[link.origin_slot].links
            if link.id in links:
                links.remove(link.id)

    # -- serialization -----------------------------------------------------

    def serialize(self) -> GraphDocument:
        return GraphDocument(
            last_node_id=self.last_node_id,
            last_link_id=self.last_link_id,
            nodes=[node.serialize() for node in self.nodes],
            links=[link.to_array() for link in self.links.values()],
            groups=[dict(g) for g in self.groups],
            config=dict(self.config),
            extra=dict(self.extra),
            version=self.version,
        )

    def configure(self, document: GraphDocument, node_factory: NodeFactory) -> None:
        """
        Replace the graph's contents with `document`.

        Raises GraphConfigurationError with the document position of the
        first entry that could not be applied.
        """
        self._nodes = {}
        self.links = {}
        self.last_node_id = document.last_node_id
        self.last_link_id = document.last_link_id
        self.groups = [dict(g) for g in document.groups]
        self.config = dict(document.config)
        self.extra = dict(document.extra)
        self.version = document.version

        for index, raw in enumerate(document.links):
            self.links_from_array(raw, location=f"links.{index}")

        for index, data in enumerate(document.nodes):
            location = f"nodes.{index}"
            if self.get_node_by_id(data.id) is not None:
                raise GraphConfigurationError(f"Duplicate node id {data.id!r}", location=location)
            try:
                node = node_factory(data)
                node.configure(data)
            except GraphConfigurationError:
                raise
            except Exception as exc:
                raise GraphConfigurationError(
                    f"Could not configure node {data.id!r} of type '{data.type}': {exc}",
                    location=location,
                    source=error_source(exc),
                ) from exc
            node.graph = self
            self._nodes[node.id] = node
            if isinstance(node.id, int) and node.id > self.last_node_id:
                self.last_node_id = node.id

    def links_from_array(self, raw: Any, *, location: str) -> Link:
        if isinstance(raw, dict):
            raw = [
                raw.get("id"),
                raw.get("origin_id"),
                raw.get("origin_slot"),
                raw.get("target_id"),
                raw.get("target_slot"),
                raw.get("type", "*"),
            ]
        if not isinstance(raw, (list, tuple)) or len(raw) < 5:
            raise GraphConfigurationError("Malformed link entry", location=location)
        link_id, origin_id, origin_slot, target_id, target_slot = raw[:5]
        if not isinstance(link_id, int) or not isinstance(origin_slot, int) or not isinstance(target_slot, int):
            raise GraphConfigurationError(
                "Link id and slot indexes must be integers", location=location
            )
        if origin_id is None or target_id is None:
            raise GraphConfigurationError("Link is missing an endpoint", location=location)
        link = Link(
            id=link_id,
            origin_id=origin_id,
            origin_slot=origin_slot,
            target_id=target_id,
            target_slot=target_slot,
            type=raw[5] if len(raw) > 5 and raw[5] is not None else "*",
        )
        self.links[link.id] = link
        if link.id > self.last_link_id:
            self.last_link_id = link.id
        return link

    def iter_all_nodes(self) -> Iterable[GraphNode]:
        """Outer nodes followed by the nodes of any group subgraphs."""
        for node in self.nodes:
            yield node
            subgraph = getattr(node, "subgraph", None)
            if subgraph is not None:
                yield from subgraph.iter_all_nodes()


def error_source(exc: BaseException) -> str | None:
    """Best-effort "file:line" of the innermost frame that raised `exc`."""
    frames = traceback.extract_tb(exc.__traceback__)
    if not frames:
        return None
    frame = frames[-1]
    return f"{frame.filename}:{frame.lineno}"
