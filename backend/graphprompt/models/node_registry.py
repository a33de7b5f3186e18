"""
Node type registry — source of truth for what each node type accepts and produces.

Definitions come from the backend's object_info endpoint, one per class tag:

    {"KSampler": {"input": {"required": {"seed": ["INT", {...}], ...}},
                  "output": ["LATENT"], "output_name": ["LATENT"], ...}}

Nodes are built generically from their definition; only the editor-side
virtual node kinds (Reroute, PrimitiveNode, Note) have dedicated classes.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Callable

from pydantic import BaseModel, Field

from graphprompt.graph.nodes import (
    GraphNode,
    InputSlot,
    NoteNode,
    OutputSlot,
    PrimitiveNode,
    RerouteNode,
)
from graphprompt.graph.widgets import Widget, create_widgets, is_widget_input

logger = logging.getLogger(__name__)


class NodeInputs(BaseModel):
    required: dict[str, list[Any]] = Field(default_factory=dict)
    optional: dict[str, list[Any]] = Field(default_factory=dict)
    hidden: dict[str, Any] = Field(default_factory=dict)


class NodeDefinition(BaseModel):
    name: str
    display_name: str | None = None
    description: str = ""
    category: str = ""
    input: NodeInputs = Field(default_factory=NodeInputs)
    output: list[Any] = Field(default_factory=list)
    output_name: list[str] = Field(default_factory=list)
    output_is_list: list[bool] = Field(default_factory=list)
    output_node: bool = False

    def iter_inputs(self) -> list[tuple[str, Any, dict[str, Any]]]:
        """(name, type, options) for required inputs, then optional ones."""
        entries: list[tuple[str, Any, dict[str, Any]]] = []
        for group in (self.input.required, self.input.optional):
            for name, spec in group.items():
                if not spec:
                    continue
                options = spec[1] if len(spec) > 1 and isinstance(spec[1], dict) else {}
                entries.append((name, spec[0], options))
        return entries


VirtualNodeClass = Callable[..., GraphNode]

VIRTUAL_NODE_TYPES: dict[str, VirtualNodeClass] = {
    "Reroute": RerouteNode,
    "PrimitiveNode": PrimitiveNode,
    "Note": NoteNode,
}


class NodeRegistry:
    """Registered node definitions plus the editor-only virtual node kinds."""

    def __init__(self, rng: random.Random | None = None):
        self._definitions: dict[str, NodeDefinition] = {}
        self._virtual: dict[str, VirtualNodeClass] = dict(VIRTUAL_NODE_TYPES)
        self.rng = rng

    def __contains__(self, node_type: str) -> bool:
        return self.is_registered(node_type)

    @property
    def definitions(self) -> dict[str, NodeDefinition]:
        return dict(self._definitions)

    def register(self, definition: NodeDefinition) -> None:
        self._definitions[definition.name] = definition

    def register_virtual(self, node_type: str, factory: VirtualNodeClass) -> None:
        self._virtual[node_type] = factory

    def get_definition(self, node_type: str) -> NodeDefinition | None:
        """Look up a node definition, returning None if unknown."""
        return self._definitions.get(node_type)

    def is_registered(self, node_type: str) -> bool:
        return node_type in self._definitions or node_type in self._virtual

    def create_node(self, node_type: str, **kwargs: Any) -> GraphNode:
        """Instantiate a node of a registered type."""
        factory = self._virtual.get(node_type)
        if factory is not None:
            return factory(node_type, **kwargs)
        definition = self._definitions.get(node_type)
        if definition is None:
            raise KeyError(f"Unknown node type '{node_type}'")
        return build_node(definition, rng=self.rng, **kwargs)


def build_node(definition: NodeDefinition, *, rng: random.Random | None = None, **kwargs: Any) -> GraphNode:
    """Build a generic node whose slots and widgets follow `definition`."""
    inputs: list[InputSlot] = []
    widgets: list[Widget] = []

    for name, input_type, options in definition.iter_inputs():
        if is_widget_input(input_type, options):
            widgets.extend(create_widgets(name, input_type, options, rng=rng))
        else:
            inputs.append(InputSlot(name=name, type=str(input_type)))

    outputs: list[OutputSlot] = []
    for index, output_type in enumerate(definition.output):
        if index < len(definition.output_name):
            name = definition.output_name[index]
        else:
            name = output_type if isinstance(output_type, str) else "*"
        # Combo outputs are typed by their choice list; the editor calls them COMBO.
        slot_type = "COMBO" if isinstance(output_type, list) else str(output_type)
        outputs.append(OutputSlot(name=name, type=slot_type))

    return GraphNode(
        definition.name,
        inputs=inputs,
        outputs=outputs,
        widgets=widgets,
        definition=definition,
        **kwargs,
    )
