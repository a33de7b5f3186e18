"""
Graph loading: turns a workflow document into a live Graph.

Pipeline: Parse → Extension pre-hooks → Normalize legacy types → Configure
→ Finish virtual nodes → Patch legacy widget values → Extension post-hooks

Normalization runs once per load, before anything is planned or resolved,
so every downstream component sees canonical type names. load_api_json()
rebuilds a graph from a compiled prompt instead of a document.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from graphprompt.errors import GraphConfigurationError, MissingNodeType
from graphprompt.graph.default_graph import default_graph_document
from graphprompt.graph.graph import Graph
from graphprompt.graph.nodes import GraphNode, GroupNode, MissingNode, NodeId
from graphprompt.graph.widgets import CONTROL_WIDGET_NAME
from graphprompt.models.node_registry import NodeRegistry
from graphprompt.models.workflow import GraphDocument, SerializedNode
from graphprompt.services.extensions import ExtensionRegistry

logger = logging.getLogger(__name__)

# Deprecated node types and known typos, mapped to their current names.
LEGACY_NODE_TYPES: dict[str, str] = {
    "T2IAdapterLoader": "ControlNetLoader",
    "ConditioningAverage ": "ConditioningAverage",
    "SDV_img2vid_Conditioning": "SVD_img2vid_Conditioning",
}

SAMPLER_NODE_TYPES = {"KSampler", "KSamplerAdvanced"}
CONTROL_NODE_TYPES = SAMPLER_NODE_TYPES | {"PrimitiveNode"}

_UNSAFE_NAME_CHARS = re.compile(r"[&<>\"'`=]")


@dataclass
class LoadResult:
    graph: Graph | None
    missing_node_types: list[MissingNodeType] = field(default_factory=list)


def sanitize_node_name(name: str) -> str:
    """Strip characters that must never reach markup from an unknown type name."""
    return _UNSAFE_NAME_CHARS.sub("", str(name))


def parse_document(data: GraphDocument | dict[str, Any]) -> GraphDocument:
    """Validate raw document data, copying it so the caller's object is untouched."""
    if isinstance(data, GraphDocument):
        return data.model_copy(deep=True)
    try:
        return GraphDocument.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise GraphConfigurationError(
            f"Invalid workflow document: {first.get('msg', 'validation error')}",
            location=location or None,
        ) from exc


def normalize_node_types(
    nodes: list[SerializedNode],
    registry: NodeRegistry,
    missing: list[Any],
) -> None:
    """Apply legacy renames and flag unregistered types, recursing into groups."""
    for data in nodes:
        if data.subgraph is not None:
            normalize_node_types(data.subgraph.nodes, registry, missing)
            continue

        canonical = LEGACY_NODE_TYPES.get(data.type)
        if canonical is not None:
            logger.info("Node %s: renamed legacy type '%s' to '%s'", data.id, data.type, canonical)
            data.type = canonical

        if not registry.is_registered(data.type):
            sanitized = sanitize_node_name(data.type)
            missing.append(MissingNodeType(data.type, sanitized_type=sanitized))
            data.type = sanitized


def _node_factory(registry: NodeRegistry):
    def create(data: SerializedNode) -> GraphNode:
        if data.subgraph is not None:
            if any(inner.subgraph is not None for inner in data.subgraph.nodes):
                raise GraphConfigurationError(f"Group node {data.id!r} contains a nested group")
            subgraph = Graph()
            subgraph.configure(data.subgraph, create)
            return GroupNode(
                data.type,
                subgraph=subgraph,
                group_inputs=data.group_inputs,
                group_outputs=data.group_outputs,
            )
        if registry.is_registered(data.type):
            return registry.create_node(data.type)
        return MissingNode(data.type)

    return create


def patch_legacy_widgets(node: GraphNode, *, reset_invalid_values: bool = False) -> None:
    """Fix widget values saved by older versions of the editor."""
    for widget in node.widgets:
        if node.type in SAMPLER_NODE_TYPES and widget.name == "sampler_name":
            if isinstance(widget.value, str) and widget.value.startswith("sample_"):
                widget.value = widget.value[len("sample_"):]

        if node.type in CONTROL_NODE_TYPES and widget.name == CONTROL_WIDGET_NAME:
            if widget.value is True:
                widget.value = "randomize"
            elif widget.value is False:
                widget.value = "fixed"

        if reset_invalid_values and widget.type == "combo":
            values = widget.options.get("values") or []
            if values and widget.value not in values:
                widget.value = values[0]


def _as_missing(entry: Any) -> MissingNodeType:
    if isinstance(entry, MissingNodeType):
        return entry
    if isinstance(entry, dict):
        return MissingNodeType(str(entry.get("type", "")), hint=entry.get("hint"))
    return MissingNodeType(str(entry))


async def load_graph_data(
    data: GraphDocument | dict[str, Any] | None,
    *,
    registry: NodeRegistry,
    extensions: ExtensionRegistry | None = None,
) -> LoadResult:
    """
    Build a Graph from a workflow document (the default graph when None).

    Unknown node types degrade to MissingNode placeholders and are reported
    in the result. Raises GraphConfigurationError if the document cannot be
    parsed or configured.
    """
    reset_invalid_values = False
    if data is None:
        data = default_graph_document()
        reset_invalid_values = True

    document = parse_document(data)
    missing: list[Any] = []

    if extensions is not None:
        await extensions.invoke_async("before_configure_graph", document, missing)

    normalize_node_types(document.nodes, registry, missing)

    graph = Graph()
    graph.configure(document, _node_factory(registry))

    all_nodes = list(graph.iter_all_nodes())
    for node in all_nodes:
        finish = getattr(node, "on_after_graph_configured", None)
        if finish is not None:
            finish()

    for node in all_nodes:
        patch_legacy_widgets(node, reset_invalid_values=reset_invalid_values)
        if extensions is not None:
            extensions.invoke("loaded_graph_node", node)

    missing_types = [_as_missing(entry) for entry in missing]
    if missing_types:
        logger.warning(
            "Loaded graph with missing node types: %s",
            ", ".join(sorted({m.node_type for m in missing_types})),
        )

    if extensions is not None:
        await extensions.invoke_async("after_configure_graph", missing_types)

    return LoadResult(graph=graph, missing_node_types=missing_types)


# ---------------------------------------------------------------------------
# Compiled prompts
# ---------------------------------------------------------------------------

def is_api_json(data: Any) -> bool:
    """True for a compiled prompt ({id: {"class_type": ..., "inputs": ...}})."""
    if not isinstance(data, dict) or not data:
        return False
    return all(isinstance(step, dict) and step.get("class_type") for step in data.values())


def _prompt_node_id(key: Any) -> NodeId:
    text = str(key)
    return int(text) if text.lstrip("-").isdigit() else text


async def load_api_json(data: dict[str, Any], *, registry: NodeRegistry) -> LoadResult:
    """
    Rebuild a graph from a compiled prompt, keeping its node ids.

    Nothing is built if any class_type is unregistered; the result then has
    no graph and lists the missing types.
    """
    missing = [
        MissingNodeType(str(step["class_type"]), sanitized_type=sanitize_node_name(step["class_type"]))
        for step in data.values()
        if not registry.is_registered(step["class_type"])
    ]
    if missing:
        logger.warning(
            "Not loading prompt with missing node types: %s",
            ", ".join(sorted({m.node_type for m in missing})),
        )
        return LoadResult(graph=None, missing_node_types=missing)

    graph = Graph()
    for key, step in data.items():
        graph.add(registry.create_node(step["class_type"], id=_prompt_node_id(key)))

    for key, step in data.items():
        node = graph.get_node_by_id(_prompt_node_id(key))
        for name, value in (step.get("inputs") or {}).items():
            if isinstance(value, list) and len(value) == 2:
                origin_id, origin_slot = value
                origin = graph.get_node_by_id(origin_id)
                target_slot = node.find_input_slot(name)
                if origin is None or target_slot == -1:
                    continue
                if not isinstance(origin_slot, int) or not 0 <= origin_slot < len(origin.outputs):
                    logger.debug("Node %s: skipping input '%s' from missing output %r", key, name, value)
                    continue
                graph.connect(origin, origin_slot, node, target_slot)
            else:
                widget = node.get_widget(name)
                if widget is not None:
                    widget.set_value(value)

    logger.info("Loaded %d node(s) from a compiled prompt", len(graph))
    return LoadResult(graph=graph)
