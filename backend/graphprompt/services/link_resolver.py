"""
Link resolution — find the node that effectively produces a value for an input.

Virtual nodes (reroutes) are followed through their paired input; bypassed
nodes are skipped through the first input whose type matches the input being
resolved, preferring the input at the same index as the bypassed output.
Resolution is a local, compile-time walk: the graph itself is not modified.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from graphprompt.errors import MalformedBypassChain
from graphprompt.graph.nodes import Link, NodeMode

logger = logging.getLogger(__name__)

DEFAULT_MAX_HOPS = 64


@dataclass
class ResolvedInput:
    node: Any
    slot: int
    link: Link


def _matching_input(producer: Any, origin_slot: int, wanted_type: str) -> int | None:
    """Input of a bypassed node to pass through: same index first, then declaration order."""
    inputs = producer.inputs or []
    for index in [origin_slot, *range(len(inputs))]:
        if 0 <= index < len(inputs) and inputs[index].type == wanted_type:
            return index
    return None


class LinkResolver:
    def __init__(self, max_hops: int = DEFAULT_MAX_HOPS):
        self.max_hops = max_hops

    def resolve(self, node: Any, slot: int) -> ResolvedInput | None:
        """
        Resolve input `slot` of `node` to its effective producer.

        Returns None when the input is unconnected, or when the walk reaches
        an unconnected pass-through input. When no further hop exists the
        last producer found is returned, even if it is virtual or bypassed.
        """
        source = node.get_input_source(slot)
        if source is None:
            return None
        producer, link = source
        wanted_type = node.inputs[slot].type
        visited = {(producer.id, link.origin_slot)}
        hops = 0

        while producer.is_virtual_node or producer.mode == NodeMode.BYPASSED:
            hops += 1
            if hops > self.max_hops:
                raise MalformedBypassChain(node.id, slot, hops)

            if producer.is_virtual_node:
                next_input = producer.passthrough_input(link.origin_slot)
            else:
                next_input = _matching_input(producer, link.origin_slot, wanted_type)
            if next_input is None:
                break

            source = producer.get_input_source(next_input)
            if source is None:
                logger.debug(
                    "Input %s of node %s ends at unconnected input %s of node %s",
                    slot, node.id, next_input, producer.id,
                )
                return None
            producer, link = source

            key = (producer.id, link.origin_slot)
            if key in visited:
                raise MalformedBypassChain(node.id, slot, hops)
            visited.add(key)

        return ResolvedInput(node=producer, slot=link.origin_slot, link=link)
