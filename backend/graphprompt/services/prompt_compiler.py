"""
Prompt compiler — transforms the editor graph into a backend prompt.

Pipeline: Order → Prepare (before-queued hooks, virtual node effects)
→ Serialize workflow → Build steps → Prune dangling references
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from graphprompt.graph.graph import Graph
from graphprompt.graph.nodes import is_skipped_mode
from graphprompt.models.prompt import CompiledStep, Prompt, StepMeta, is_reference
from graphprompt.services.execution_order import compute_execution_order
from graphprompt.services.link_resolver import LinkResolver

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def graph_to_prompt(
    graph: Graph,
    *,
    resolver: LinkResolver | None = None,
    dev_mode: bool = False,
) -> Prompt:
    """
    Compile `graph` into a Prompt (serialized workflow + execution steps).

    Raises CyclicGraph or MalformedBypassChain for graphs that cannot be
    ordered or resolved. Dangling references are pruned, never raised.
    """
    order = compute_execution_order(graph)
    prepare_nodes(order)
    workflow = graph.serialize()
    output = await compile_steps(order, resolver=resolver or LinkResolver(), dev_mode=dev_mode)
    return Prompt(workflow=workflow, output=output)


def widget_hook_targets(outer: Any) -> list[Any]:
    """An outer node followed by its group inner nodes, if any."""
    return [outer, *(outer.get_inner_nodes() or [])]


def prepare_nodes(ordered_nodes: Iterable[Any]) -> None:
    """Run widget before-queued hooks and let virtual nodes apply their effects."""
    for outer in ordered_nodes:
        for node in widget_hook_targets(outer):
            for widget in node.widgets:
                # e.g. a seed that must change before every generation
                if widget.before_queued is not None:
                    widget.before_queued()

        inner_nodes = outer.get_inner_nodes()
        if inner_nodes is None:
            inner_nodes = [outer]
        for node in inner_nodes:
            if node.is_virtual_node:
                apply = getattr(node, "apply_to_graph", None)
                if apply is not None:
                    apply()


async def compile_steps(
    ordered_nodes: Iterable[Any],
    *,
    resolver: LinkResolver,
    dev_mode: bool = False,
) -> dict[str, CompiledStep]:
    output: dict[str, CompiledStep] = {}

    for outer in ordered_nodes:
        for node in _expand(outer):
            if node.is_virtual_node or is_skipped_mode(node.mode):
                continue
            output[str(node.id)] = await _build_step(node, resolver=resolver, dev_mode=dev_mode)

    pruned = prune_dangling_references(output)
    if pruned:
        logger.debug("Pruned %d input(s) referencing nodes absent from the prompt", pruned)
    return output


def prune_dangling_references(output: dict[str, CompiledStep]) -> int:
    """Delete inputs that reference a step not present in `output`."""
    removed = 0
    for node_id, step in output.items():
        for name, value in list(step.inputs.items()):
            if is_reference(value) and value[0] not in output:
                logger.debug("Removing input '%s' of node %s: node %s is not in the prompt", name, node_id, value[0])
                del step.inputs[name]
                removed += 1
    return removed


# ---------------------------------------------------------------------------
# Step building
# ---------------------------------------------------------------------------

def _expand(outer: Any) -> list[Any]:
    # Muted or bypassed groups are not expanded; the outer node is skipped instead.
    if is_skipped_mode(outer.mode):
        return [outer]
    inner_nodes = outer.get_inner_nodes()
    return [outer] if inner_nodes is None else inner_nodes


async def _build_step(node: Any, *, resolver: LinkResolver, dev_mode: bool) -> CompiledStep:
    inputs: dict[str, Any] = {}

    for index, widget in enumerate(node.widgets):
        if widget.serializable:
            inputs[widget.name] = await widget.serialize(node, index)

    for slot_index, slot in enumerate(node.inputs):
        resolved = resolver.resolve(node, slot_index)
        # A chain ending on a virtual node carries no backend value; keep the widget value.
        if resolved is None or resolved.node.is_virtual_node:
            continue
        inputs[slot.name] = [str(resolved.node.id), int(resolved.slot)]

    return CompiledStep(
        class_type=node.comfy_class,
        inputs=inputs,
        meta=StepMeta(title=node.title) if dev_mode else None,
    )
