"""
Extension hooks.

An extension subclasses Extension and overrides the hooks it cares about.
Every hook receives the owning AppContext as its last argument. A failing
extension is logged and skipped; it never aborts the broadcast.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from graphprompt.context import AppContext

logger = logging.getLogger(__name__)

ExtensionHook = Literal[
    "init",
    "setup",
    "add_custom_node_defs",
    "before_register_node_def",
    "before_configure_graph",
    "loaded_graph_node",
    "after_configure_graph",
    "cleanup",
]


class Extension:
    """
    Base class for extensions. Hooks not overridden are skipped by dispatch.

    Hook signatures (ctx is always last):
        init(ctx)
        setup(ctx)
        add_custom_node_defs(defs, ctx)
        before_register_node_def(definition, ctx)
        before_configure_graph(document, missing_node_types, ctx)
        loaded_graph_node(node, ctx)
        after_configure_graph(missing_node_types, ctx)
        cleanup(ctx)
    """

    name: str = ""


def _hook(extension: Any, hook: str) -> Any:
    method = getattr(extension, hook, None)
    return method if callable(method) else None


class ExtensionRegistry:
    def __init__(self, context: AppContext | None = None):
        self._extensions: list[Any] = []
        self.context = context

    def __iter__(self):
        return iter(self._extensions)

    def __len__(self) -> int:
        return len(self._extensions)

    def register(self, extension: Any) -> None:
        name = getattr(extension, "name", None)
        if not name:
            raise ValueError("Extensions must have a 'name' property.")
        if any(getattr(e, "name", None) == name for e in self._extensions):
            raise ValueError(f"Extension named '{name}' already registered.")
        self._extensions.append(extension)

    def invoke(self, hook: ExtensionHook, *args: Any) -> list[Any]:
        """Call a synchronous hook on every extension that declares it."""
        results: list[Any] = []
        for extension in self._extensions:
            method = _hook(extension, hook)
            if method is None:
                continue
            try:
                results.append(method(*args, self.context))
            except Exception:
                logger.exception(
                    "Error calling extension '%s' method '%s'",
                    getattr(extension, "name", type(extension).__name__),
                    hook,
                )
        return results

    async def invoke_async(self, hook: ExtensionHook, *args: Any) -> list[Any]:
        """Call a hook on every extension concurrently; sync hooks are allowed."""

        async def call(extension: Any) -> Any:
            method = _hook(extension, hook)
            if method is None:
                return None
            try:
                result = method(*args, self.context)
                if inspect.isawaitable(result):
                    result = await result
                return result
            except Exception:
                logger.exception(
                    "Error calling extension '%s' method '%s'",
                    getattr(extension, "name", type(extension).__name__),
                    hook,
                )
                return None

        return list(await asyncio.gather(*(call(ext) for ext in self._extensions)))
