"""
Graph nodes, slots and links.

Node behaviour is data driven: a regular node is a GraphNode parameterized by
the NodeDefinition it was built from. Only the editor-side node kinds that
change how compilation walks the graph get their own class:

    RerouteNode    virtual, passes input 0 straight through to output 0
    PrimitiveNode  virtual, pushes its value into the widgets it is wired to
    NoteNode       virtual, carries text only
    GroupNode      expands to the nodes of an inner graph at compile time
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Union

from graphprompt.graph.widgets import (
    CONTROL_WIDGET_NAME,
    Widget,
    add_value_control_widget,
)
from graphprompt.models.workflow import (
    GroupSlotRef,
    SerializedInput,
    SerializedNode,
    SerializedOutput,
)

if TYPE_CHECKING:
    from graphprompt.graph.graph import Graph
    from graphprompt.models.node_registry import NodeDefinition

logger = logging.getLogger(__name__)

NodeId = Union[int, str]


class NodeMode(IntEnum):
    NORMAL = 0
    MUTED = 2
    NEVER = 2
    BYPASSED = 4


def is_skipped_mode(mode: Any) -> bool:
    """Muted and bypassed nodes are never emitted into a prompt."""
    return mode in (NodeMode.MUTED, NodeMode.BYPASSED)


@dataclass
class Link:
    id: int
    origin_id: NodeId
    origin_slot: int
    target_id: NodeId
    target_slot: int
    type: str = "*"

    def to_array(self) -> list[Any]:
        return [self.id, self.origin_id, self.origin_slot, self.target_id, self.target_slot, self.type]


@dataclass
class InputSlot:
    name: str
    type: str = "*"
    link: int | None = None
    widget: str | None = None


@dataclass
class OutputSlot:
    name: str
    type: str = "*"
    links: list[int] = field(default_factory=list)


class GraphNode:
    """A node of the editor graph."""

    is_virtual_node = False

    def __init__(
        self,
        type: str,
        *,
        id: NodeId | None = None,
        title: str | None = None,
        mode: int = NodeMode.NORMAL,
        inputs: list[InputSlot] | None = None,
        outputs: list[OutputSlot] | None = None,
        widgets: list[Widget] | None = None,
        properties: dict[str, Any] | None = None,
        definition: NodeDefinition | None = None,
    ):
        self.type = type
        self.id = id
        self.title = title or (definition.display_name if definition else None) or type
        self.mode = mode
        self.inputs: list[InputSlot] = list(inputs or [])
        self.outputs: list[OutputSlot] = list(outputs or [])
        self.widgets: list[Widget] = list(widgets or [])
        self.properties: dict[str, Any] = dict(properties or {})
        self.definition = definition
        self.graph: Graph | None = None
        self.order = 0
        self.has_errors = False
        self.pos: list[float] = [0.0, 0.0]
        self.size: list[float] = [0.0, 0.0]
        self.flags: dict[str, Any] = {}
        self._extra: dict[str, Any] = {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, type={self.type!r})"

    @property
    def comfy_class(self) -> str:
        """Class tag sent to the backend."""
        return self.definition.name if self.definition else self.type

    # -- capabilities ------------------------------------------------------

    def get_inner_nodes(self) -> list[Any] | None:
        """Nodes this node expands to at compile time (None: itself)."""
        return None

    def passthrough_input(self, output_slot: int) -> int | None:
        """Input slot paired with `output_slot` on virtual nodes."""
        return None

    # -- lookup ------------------------------------------------------------

    def get_widget(self, name: str) -> Widget | None:
        return next((w for w in self.widgets if w.name == name), None)

    def find_input_slot(self, name: str) -> int:
        return next((i for i, slot in enumerate(self.inputs) if slot.name == name), -1)

    def get_input_link(self, slot: int) -> Link | None:
        if self.graph is None or slot < 0 or slot >= len(self.inputs):
            return None
        link_id = self.inputs[slot].link
        if link_id is None:
            return None
        return self.graph.links.get(link_id)

    def get_input_source(self, slot: int) -> tuple[Any, Link] | None:
        """The node feeding input `slot` and the link carrying it."""
        link = self.get_input_link(slot)
        if link is None or self.graph is None:
            return None
        origin = self.graph.get_node_by_id(link.origin_id)
        if origin is None:
            return None
        return unwrap_group_producer(origin, link)

    def get_input_node(self, slot: int) -> Any | None:
        source = self.get_input_source(slot)
        return source[0] if source else None

    def iter_output_links(self, slot: int = 0) -> list[Link]:
        if self.graph is None or slot >= len(self.outputs):
            return []
        links = (self.graph.links.get(link_id) for link_id in self.outputs[slot].links)
        return [link for link in links if link is not None]

    # -- serialization -----------------------------------------------------

    def configure(self, data: SerializedNode) -> None:
        """Apply serialized state on top of the definition-built node."""
        self.id = data.id
        if data.title is not None:
            self.title = data.title
        self.mode = data.mode
        self.order = data.order
        self.pos = list(data.pos)
        self.size = list(data.size)
        self.flags = dict(data.flags)
        self.properties.update(data.properties)
        if data.inputs:
            self.inputs = [
                InputSlot(
                    name=slot.name,
                    type=slot.type,
                    link=slot.link,
                    widget=(slot.widget or {}).get("name"),
                )
                for slot in data.inputs
            ]
        if data.outputs:
            self.outputs = [
                OutputSlot(name=slot.name, type=slot.type, links=list(slot.links or []))
                for slot in data.outputs
            ]
        if data.widgets_values is not None:
            for widget, value in zip(self.widgets, data.widgets_values):
                widget.value = value
        self._extra = dict(data.model_extra or {})

    def serialize(self) -> SerializedNode:
        data = SerializedNode(
            id=self.id,
            type=self.type,
            title=self.title,
            pos=list(self.pos),
            size=list(self.size),
            flags=dict(self.flags),
            order=self.order,
            mode=int(self.mode),
            inputs=[
                SerializedInput(
                    name=slot.name,
                    type=slot.type,
                    link=slot.link,
                    widget={"name": slot.widget} if slot.widget else None,
                )
                for slot in self.inputs
            ],
            outputs=[
                SerializedOutput(name=slot.name, type=slot.type, links=list(slot.links), slot_index=i)
                for i, slot in enumerate(self.outputs)
            ],
            properties=dict(self.properties),
            widgets_values=[w.value for w in self.widgets] if self.widgets else None,
            **self._extra,
        )
        return data


class MissingNode(GraphNode):
    """Stand-in for a node whose type is not registered; keeps its saved values."""

    def __init__(self, type: str, **kwargs: Any):
        super().__init__(type, **kwargs)
        self.has_errors = True
        self._widgets_values: list[Any] | None = None

    def configure(self, data: SerializedNode) -> None:
        super().configure(data)
        self._widgets_values = list(data.widgets_values) if data.widgets_values is not None else None

    def serialize(self) -> SerializedNode:
        data = super().serialize()
        data.widgets_values = self._widgets_values
        return data


class RerouteNode(GraphNode):
    is_virtual_node = True

    def __init__(self, type: str = "Reroute", **kwargs: Any):
        kwargs.setdefault("inputs", [InputSlot(name="", type="*")])
        kwargs.setdefault("outputs", [OutputSlot(name="", type="*")])
        super().__init__(type, **kwargs)

    def passthrough_input(self, output_slot: int) -> int | None:
        return 0 if output_slot == 0 else None


class NoteNode(GraphNode):
    is_virtual_node = True

    def __init__(self, type: str = "Note", **kwargs: Any):
        kwargs.setdefault("widgets", [Widget("text", "", type="customtext")])
        super().__init__(type, **kwargs)


class PrimitiveNode(GraphNode):
    """
    Virtual value node wired into converted widget inputs.

    Its value widget mirrors the first target widget; apply_to_graph copies
    the value onto every connected target before the prompt is built.
    """

    is_virtual_node = True

    def __init__(self, type: str = "PrimitiveNode", **kwargs: Any):
        kwargs.setdefault("outputs", [OutputSlot(name="connect to widget input", type="*")])
        super().__init__(type, **kwargs)
        self._pending_values: list[Any] | None = None

    def configure(self, data: SerializedNode) -> None:
        super().configure(data)
        # Widgets are rebuilt from the target once links exist.
        self._pending_values = list(data.widgets_values or [])

    def _targets(self) -> list[tuple[GraphNode, Widget]]:
        targets: list[tuple[GraphNode, Widget]] = []
        if self.graph is None:
            return targets
        for link in self.iter_output_links(0):
            node = self.graph.get_node_by_id(link.target_id)
            if node is None or link.target_slot >= len(node.inputs):
                continue
            widget_name = node.inputs[link.target_slot].widget
            widget = node.get_widget(widget_name) if widget_name else None
            if widget is not None:
                targets.append((node, widget))
        return targets

    def on_after_graph_configured(self) -> None:
        """Create the value widget from the first connected target widget."""
        if self.widgets:
            return
        targets = self._targets()
        if not targets:
            return
        node, target = targets[0]
        pending = self._pending_values or []
        value = pending[0] if pending else target.value
        widget = Widget(target.name, value, type=target.type, options=dict(target.options))
        widget.options.pop("linked_control", None)
        self.widgets = [widget]
        if target.type == "number" and node.get_widget(CONTROL_WIDGET_NAME) is not None:
            control = add_value_control_widget(widget)
            if len(pending) > 1:
                control.value = pending[1]
            self.widgets.append(control)
        slot = node.find_input_slot(target.name)
        if slot >= 0:
            self.outputs[0].type = node.inputs[slot].type
        self._pending_values = None

    def serialize(self) -> SerializedNode:
        data = super().serialize()
        if not self.widgets and self._pending_values:
            data.widgets_values = list(self._pending_values)
        return data

    def apply_to_graph(self) -> None:
        if not self.widgets:
            return
        value = self.widgets[0].value
        for node, widget in self._targets():
            widget.set_value(value)

    def refresh_combo_in_node(self, definitions: dict[str, Any]) -> None:
        if not self.widgets or self.widgets[0].type != "combo":
            return
        for node, target in self._targets():
            definition = definitions.get(node.type)
            if definition is None:
                continue
            spec = definition.input.required.get(target.name)
            if spec and isinstance(spec[0], list):
                widget = self.widgets[0]
                widget.options["values"] = list(spec[0])
                if widget.value not in widget.options["values"] and widget.options["values"]:
                    widget.set_value(widget.options["values"][0])
            return


class GroupNode(GraphNode):
    """
    A node that expands to the nodes of an inner graph.

    `group_inputs[i]` names the inner (node, slot) fed by outer input i and
    `group_outputs[j]` the inner (node, slot) producing outer output j.
    """

    def __init__(
        self,
        type: str,
        *,
        subgraph: Graph,
        group_inputs: list[GroupSlotRef] | None = None,
        group_outputs: list[GroupSlotRef] | None = None,
        **kwargs: Any,
    ):
        super().__init__(type, **kwargs)
        self.subgraph = subgraph
        self.group_inputs: list[GroupSlotRef] = list(group_inputs or [])
        self.group_outputs: list[GroupSlotRef] = list(group_outputs or [])
        self._inner: dict[NodeId, InnerNode] = {}

    def inner_node(self, inner_id: NodeId) -> InnerNode | None:
        proxy = self._inner.get(inner_id)
        if proxy is None:
            node = self.subgraph.get_node_by_id(inner_id)
            if node is None:
                return None
            proxy = InnerNode(self, node)
            self._inner[inner_id] = proxy
        return proxy

    def get_inner_nodes(self) -> list[Any]:
        from graphprompt.services.execution_order import compute_execution_order

        return [self.inner_node(node.id) for node in compute_execution_order(self.subgraph)]

    def output_source(self, output_slot: int, link: Link) -> tuple[Any, Link] | None:
        """The inner producer behind outer output `output_slot`."""
        if output_slot >= len(self.group_outputs):
            return None
        ref = self.group_outputs[output_slot]
        proxy = self.inner_node(ref.node_id)
        if proxy is None:
            return None
        rewritten = Link(
            id=link.id,
            origin_id=proxy.id,
            origin_slot=ref.slot,
            target_id=link.target_id,
            target_slot=link.target_slot,
            type=link.type,
        )
        return proxy, rewritten

    def serialize(self) -> SerializedNode:
        data = super().serialize()
        data.subgraph = self.subgraph.serialize()
        data.group_inputs = list(self.group_inputs)
        data.group_outputs = list(self.group_outputs)
        return data


class InnerNode:
    """
    Compile-time view of a node inside a group.

    Ids are namespaced "<group id>:<inner id>" so they stay unique in the
    prompt; links entering the group are taken from the group's own inputs.
    """

    def __init__(self, group: GroupNode, node: GraphNode):
        self.group = group
        self.node = node
        self.id = f"{group.id}:{node.id}"

    def __repr__(self) -> str:
        return f"InnerNode(id={self.id!r}, type={self.type!r})"

    @property
    def type(self) -> str:
        return self.node.type

    @property
    def comfy_class(self) -> str:
        return self.node.comfy_class

    @property
    def title(self) -> str:
        return self.node.title

    @property
    def mode(self) -> int:
        return self.node.mode

    @property
    def is_virtual_node(self) -> bool:
        return self.node.is_virtual_node

    @property
    def inputs(self) -> list[InputSlot]:
        return self.node.inputs

    @property
    def outputs(self) -> list[OutputSlot]:
        return self.node.outputs

    @property
    def widgets(self) -> list[Widget]:
        return self.node.widgets

    def get_inner_nodes(self) -> None:
        return None

    def passthrough_input(self, output_slot: int) -> int | None:
        return self.node.passthrough_input(output_slot)

    def apply_to_graph(self) -> None:
        apply = getattr(self.node, "apply_to_graph", None)
        if apply is not None:
            apply()

    def get_input_source(self, slot: int) -> tuple[Any, Link] | None:
        inner_link = self.node.get_input_link(slot)
        if inner_link is not None:
            origin = self.group.inner_node(inner_link.origin_id)
            if origin is None:
                return None
            link = Link(
                id=inner_link.id,
                origin_id=origin.id,
                origin_slot=inner_link.origin_slot,
                target_id=self.id,
                target_slot=slot,
                type=inner_link.type,
            )
            return origin, link

        for outer_slot, ref in enumerate(self.group.group_inputs):
            if ref.node_id == self.node.id and ref.slot == slot:
                source = self.group.get_input_source(outer_slot)
                if source is None:
                    return None
                origin, outer_link = source
                link = Link(
                    id=outer_link.id,
                    origin_id=outer_link.origin_id,
                    origin_slot=outer_link.origin_slot,
                    target_id=self.id,
                    target_slot=slot,
                    type=outer_link.type,
                )
                return origin, link
        return None


def unwrap_group_producer(origin: Any, link: Link) -> tuple[Any, Link]:
    """Replace an active group node producer by the inner node behind its output."""
    if isinstance(origin, GroupNode) and origin.mode == NodeMode.NORMAL:
        source = origin.output_source(link.origin_slot, link)
        if source is not None:
            return source
    return origin, link
