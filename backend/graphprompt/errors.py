"""
Error taxonomy for loading, compiling and submitting workflows.

Compile-time structural problems derive from WorkflowError so the submission
queue can abort a single request without stopping the drain loop.
"""

from __future__ import annotations

from typing import Any


class WorkflowError(Exception):
    """Base class for errors raised while loading or compiling a workflow."""


class GraphConfigurationError(WorkflowError):
    """
    Raised when a graph document cannot be parsed or configured.

    `location` is a best-effort pointer into the document (e.g.
    "nodes.3.inputs.0") and `source` names the extension or module that
    raised the underlying error, when it can be determined.
    """

    def __init__(
        self,
        message: str,
        *,
        location: str | None = None,
        source: str | None = None,
    ):
        self.message = message
        self.location = location
        self.source = source
        detail = message
        if location:
            detail = f"{detail} (at {location})"
        if source:
            detail = f"{detail} [source: {source}]"
        super().__init__(detail)


class MissingNodeType(WorkflowError):
    """A node type referenced by a document is not registered."""

    def __init__(self, node_type: str, *, sanitized_type: str | None = None, hint: str | None = None):
        self.node_type = node_type
        self.sanitized_type = sanitized_type if sanitized_type is not None else node_type
        self.hint = hint
        super().__init__(f"Node type '{node_type}' is not registered")


class CyclicGraph(WorkflowError):
    """The execution order planner found a cycle."""

    def __init__(self, node_ids: list[Any]):
        self.node_ids = list(node_ids)
        joined = ", ".join(str(n) for n in self.node_ids)
        super().__init__(f"Cycle detected involving nodes: {joined}")


class MalformedBypassChain(WorkflowError):
    """Link resolution revisited a node or exceeded its hop bound."""

    def __init__(self, node_id: Any, slot: int, hops: int):
        self.node_id = node_id
        self.slot = slot
        self.hops = hops
        super().__init__(
            f"Could not resolve input {slot} of node {node_id}: "
            f"bypass/reroute chain does not terminate after {hops} hops"
        )


class SubmissionRejected(Exception):
    """
    The backend refused a prompt.

    `response` is the decoded JSON error payload when the backend returned
    one: {"error": {...}, "node_errors": {...}}.
    """

    def __init__(self, message: str, *, response: dict[str, Any] | None = None, status_code: int | None = None):
        self.message = message
        self.response = response
        self.status_code = status_code
        super().__init__(message)

    @property
    def node_errors(self) -> dict[str, Any] | None:
        if not self.response:
            return None
        return self.response.get("node_errors")
