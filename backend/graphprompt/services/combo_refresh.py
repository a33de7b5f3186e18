"""Refresh combo widget choices (model lists, file lists) from the backend."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from graphprompt.models.node_registry import NodeDefinition

if TYPE_CHECKING:
    from graphprompt.context import AppContext

logger = logging.getLogger(__name__)

# Uploaded images may not be listed yet; keep the user's selection.
PRESERVED_COMBO_WIDGETS = {"image"}


async def refresh_combo_in_nodes(ctx: AppContext) -> int:
    """
    Re-fetch node definitions and update every combo widget's choices.

    Returns the number of widgets whose value was reset.
    """
    definitions = await ctx.register_nodes_from_defs()
    reset = 0

    for node in ctx.graph.nodes:
        refresh = getattr(node, "refresh_combo_in_node", None)
        if refresh is not None:
            refresh(definitions)

        definition = definitions.get(node.type)
        if definition is None:
            continue
        reset += refresh_node_combos(node, definition)

    if reset:
        logger.info("Reset %d combo widget(s) to their first valid choice", reset)
    return reset


def refresh_node_combos(node, definition: NodeDefinition) -> int:
    reset = 0
    for widget in node.widgets:
        if widget.type != "combo":
            continue
        spec = definition.input.required.get(widget.name)
        if not spec or not isinstance(spec[0], list):
            continue
        values = list(spec[0])
        widget.options["values"] = values
        if widget.name in PRESERVED_COMBO_WIDGETS or not values:
            continue
        if widget.value not in values:
            widget.value = values[0]
            if widget.callback is not None:
                widget.callback(widget.value)
            reset += 1
    return reset
