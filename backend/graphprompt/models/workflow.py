"""
Workflow document models (the serialized form of an editor graph).

Follows the LiteGraph layout: nodes carry their slots and widget values,
links are stored as flat arrays
    [link_id, origin_id, origin_slot, target_id, target_slot, type]
Unknown keys are preserved so documents round-trip through load/serialize.
"""

from __future__ import annotations

from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field


NodeId = Union[int, str]
LinkArray = list[Any]


class SerializedInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    type: str = "*"
    link: int | None = None
    # Present when the input was converted from a widget: {"name": <widget>}
    widget: dict[str, Any] | None = None


class SerializedOutput(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    type: str = "*"
    links: list[int] | None = None
    slot_index: int | None = None


class GroupSlotRef(BaseModel):
    """Maps an outer group-node slot to a slot of one of its inner nodes."""

    node_id: NodeId
    slot: int


class SerializedNode(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: NodeId
    type: str
    title: str | None = None
    pos: list[float] = Field(default_factory=lambda: [0.0, 0.0])
    size: list[float] = Field(default_factory=lambda: [0.0, 0.0])
    flags: dict[str, Any] = Field(default_factory=dict)
    order: int = 0
    mode: int = 0
    inputs: list[SerializedInput] = Field(default_factory=list)
    outputs: list[SerializedOutput] = Field(default_factory=list)
    properties: dict[str, Any] = Field(default_factory=dict)
    widgets_values: list[Any] | None = None
    # Group nodes only
    subgraph: GraphDocument | None = None
    group_inputs: list[GroupSlotRef] | None = None
    group_outputs: list[GroupSlotRef] | None = None


class GraphDocument(BaseModel):
    model_config = ConfigDict(extra="allow")

    last_node_id: int = 0
    last_link_id: int = 0
    nodes: list[SerializedNode] = Field(default_factory=list)
    links: list[LinkArray] = Field(default_factory=list)
    groups: list[dict[str, Any]] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)
    version: float = 0.4


SerializedNode.model_rebuild()
