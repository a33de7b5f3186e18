"""
The state shared by loading, compiling and submitting.

One AppContext owns the node registry, extensions, backend client, current
graph and the error slots the editor displays. Components receive the
context explicitly instead of reaching for module-level state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from graphprompt.config import Settings
from graphprompt.errors import GraphConfigurationError
from graphprompt.graph.graph import Graph
from graphprompt.models.node_registry import NodeDefinition, NodeRegistry
from graphprompt.models.prompt import ExecutedDetail, ExecutionErrorDetail, NodeError, Prompt
from graphprompt.models.workflow import GraphDocument
from graphprompt.services.backend_client import BackendClient, HttpBackendClient
from graphprompt.services.combo_refresh import refresh_combo_in_nodes
from graphprompt.services.extensions import ExtensionRegistry
from graphprompt.services.graph_loader import LoadResult, load_api_json, load_graph_data
from graphprompt.services.link_resolver import LinkResolver
from graphprompt.services.prompt_compiler import graph_to_prompt
from graphprompt.services.submission_queue import SubmissionQueue, format_execution_error

logger = logging.getLogger(__name__)


class EditorSurface:
    """
    Hooks into whatever displays the graph. The default implementation only
    logs; an editor front end overrides these.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[[dict[str, Any]], None]]] = {}

    def show_dialog(self, message: str) -> None:
        logger.warning("%s", message)

    def redraw(self) -> None:
        return None

    async def update_queue(self) -> None:
        return None

    def add_event_listener(self, event: str, listener: Callable[[dict[str, Any]], None]) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def dispatch(self, event: str, detail: dict[str, Any]) -> None:
        logger.debug("Event %s: %s", event, detail)
        for listener in self._listeners.get(event, []):
            listener(detail)


@dataclass
class Clipspace:
    """Widget values copied from one node, ready to paste onto another."""

    widgets: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def copy_from(cls, node: Any) -> "Clipspace":
        return cls(widgets=[{"type": w.type, "name": w.name, "value": w.value} for w in node.widgets])

    def paste_to(self, node: Any) -> None:
        for entry in self.widgets:
            widget = next(
                (w for w in node.widgets if w.type == entry["type"] and w.name == entry["name"]),
                None,
            )
            if widget is None or widget.type == "button":
                continue
            value = entry["value"]
            if isinstance(value, dict) and value.get("filename") and isinstance(widget.value, str):
                # File references paste as "subfolder/name [type]"
                path = value["filename"]
                if value.get("subfolder"):
                    path = f"{value['subfolder']}/{path}"
                if value.get("type"):
                    path = f"{path} [{value['type']}]"
                widget.value = path
            else:
                widget.set_value(value)


class AppContext:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        registry: NodeRegistry | None = None,
        backend: BackendClient | None = None,
        surface: EditorSurface | None = None,
    ):
        self.settings = settings or Settings.from_env()
        self.registry = registry or NodeRegistry()
        self.extensions = ExtensionRegistry(self)
        self.backend = backend or HttpBackendClient(
            self.settings.backend_url,
            client_id=self.settings.client_id,
            timeout=self.settings.backend_timeout,
        )
        self.surface = surface or EditorSurface()
        self.resolver = LinkResolver(max_hops=self.settings.max_link_hops)
        self.queue = SubmissionQueue(self)

        self.graph = Graph()
        self.last_node_errors: dict[str, NodeError] | None = None
        self.last_execution_error: ExecutionErrorDetail | None = None
        self.last_load_error: GraphConfigurationError | None = None
        self.running_node_id: str | None = None
        self.node_outputs: dict[str, Any] = {}
        self.clipspace: Clipspace | None = None

    # -- lifecycle ---------------------------------------------------------

    async def setup(self, workflow: GraphDocument | dict[str, Any] | None = None) -> LoadResult | None:
        """Run extension init, register node definitions, then load a workflow."""
        await self.extensions.invoke_async("init")
        await self.register_nodes_from_defs()
        result = await self.load_graph_data(workflow)
        await self.extensions.invoke_async("setup")
        return result

    def clean(self) -> None:
        """Drop per-run state (outputs, error slots)."""
        self.node_outputs = {}
        self.last_node_errors = None
        self.last_execution_error = None
        self.running_node_id = None

    async def cleanup(self) -> None:
        self.extensions.invoke("cleanup")
        await self.backend.aclose()

    # -- node definitions --------------------------------------------------

    async def register_nodes_from_defs(self) -> dict[str, NodeDefinition]:
        raw_defs = await self.backend.get_node_defs()
        await self.extensions.invoke_async("add_custom_node_defs", raw_defs)

        definitions: dict[str, NodeDefinition] = {}
        for name, raw in raw_defs.items():
            definition = NodeDefinition.model_validate({**raw, "name": raw.get("name", name)})
            await self.extensions.invoke_async("before_register_node_def", definition)
            self.registry.register(definition)
            definitions[name] = definition

        logger.info("Registered %d node definition(s)", len(definitions))
        return definitions

    async def refresh_combo_in_nodes(self) -> int:
        return await refresh_combo_in_nodes(self)

    # -- graph -------------------------------------------------------------

    async def load_graph_data(
        self,
        data: GraphDocument | dict[str, Any] | None = None,
        *,
        clean: bool = True,
    ) -> LoadResult | None:
        """
        Replace the current graph with `data` (the default graph when None).

        Returns None when the document cannot be loaded; the error is shown
        and kept in `last_load_error`, and the current graph is left alone.
        """
        if clean:
            self.clean()
        try:
            result = await load_graph_data(data, registry=self.registry, extensions=self.extensions)
        except GraphConfigurationError as exc:
            logger.exception("Unable to load workflow")
            self.last_load_error = exc
            self.surface.show_dialog(format_load_error(exc))
            return None

        self.last_load_error = None
        self.graph = result.graph
        if result.missing_node_types:
            self.surface.show_dialog(format_missing_nodes(result))
        self.surface.redraw()
        return result

    async def load_api_json(self, data: dict[str, Any]) -> LoadResult:
        """
        Replace the current graph with one rebuilt from a compiled prompt.

        If any node type is unknown the missing types are shown and the
        current graph is kept.
        """
        result = await load_api_json(data, registry=self.registry)
        if result.graph is None:
            self.surface.show_dialog(format_missing_nodes(result, has_added_nodes=False))
            return result
        self.graph = result.graph
        self.surface.redraw()
        return result

    async def graph_to_prompt(self) -> Prompt:
        return await graph_to_prompt(self.graph, resolver=self.resolver, dev_mode=self.settings.dev_mode)

    async def queue_prompt(self, number: int = 0, batch_count: int = 1) -> None:
        await self.queue.enqueue(number, batch_count)

    # -- backend events ----------------------------------------------------

    def handle_backend_event(self, event: str, detail: Any = None) -> bool:
        """Route a backend event to its handler. Returns False for unhandled events."""
        handlers: dict[str, Callable[[Any], None]] = {
            "execution_start": self.handle_execution_start,
            "executing": self.handle_executing,
            "executed": self.handle_executed,
            "execution_error": self.handle_execution_error,
        }
        handler = handlers.get(event)
        if handler is None:
            logger.debug("Ignoring backend event %s", event)
            return False
        handler(detail)
        return True

    def handle_execution_start(self, detail: Any = None) -> None:
        self.running_node_id = None
        self.last_execution_error = None
        for node in self.graph.nodes:
            on_start = getattr(node, "on_execution_start", None)
            if on_start is not None:
                on_start()

    def handle_executing(self, node_id: str | int | None) -> None:
        """The backend started running `node_id` (None: the prompt finished)."""
        self.running_node_id = None if node_id is None else str(node_id)
        self.surface.redraw()

    def handle_executed(self, detail: ExecutedDetail | dict[str, Any]) -> None:
        if isinstance(detail, dict):
            detail = ExecutedDetail.model_validate(detail)
        node_id = str(detail.node)
        incoming = detail.output or {}
        existing = self.node_outputs.get(node_id)

        if detail.merge and existing is not None:
            for key, value in incoming.items():
                current = existing.get(key)
                if isinstance(current, list):
                    existing[key] = current + (value if isinstance(value, list) else [value])
                else:
                    existing[key] = value
        else:
            self.node_outputs[node_id] = dict(incoming)

        node = self.graph.get_node_by_id(node_id)
        on_executed = getattr(node, "on_executed", None)
        if on_executed is not None:
            on_executed(incoming)

    def handle_execution_error(self, detail: ExecutionErrorDetail | dict[str, Any]) -> None:
        if isinstance(detail, dict):
            detail = ExecutionErrorDetail.model_validate(detail)
        self.last_execution_error = detail
        self.surface.show_dialog(format_execution_error(detail))
        self.surface.redraw()

    # -- clipspace ---------------------------------------------------------

    def copy_to_clipspace(self, node: Any) -> None:
        self.clipspace = Clipspace.copy_from(node)

    def paste_from_clipspace(self, node: Any) -> None:
        if self.clipspace is not None:
            self.clipspace.paste_to(node)
            self.surface.redraw()


def format_load_error(exc: GraphConfigurationError) -> str:
    lines = ["Loading aborted due to error reloading workflow data", "", exc.message]
    if exc.location:
        lines.append(f"Location: {exc.location}")
    if exc.source:
        lines.append(f"This may be due to the following script: {exc.source}")
    return "\n".join(lines)


def format_missing_nodes(result: LoadResult, *, has_added_nodes: bool = True) -> str:
    seen: dict[str, str] = {}
    for missing in result.missing_node_types:
        entry = missing.sanitized_type
        if missing.hint:
            entry = f"{entry} ({missing.hint})"
        seen.setdefault(missing.sanitized_type, entry)
    lines = ["When loading the graph, the following node types were not found:"]
    lines.extend(f"  - {entry}" for entry in seen.values())
    if has_added_nodes:
        lines.append("Nodes that have failed to load will show as red on the graph.")
    return "\n".join(lines)
