"""
Prompt models — the compiled, backend-consumable representation of a workflow.

A prompt is keyed by stringified node id:
    {"<id>": {"class_type": str, "inputs": {...}, "_meta": {"title": str}}}
where each input is either a literal widget value or an
[origin_id, origin_slot] reference to another step of the same prompt.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from graphprompt.models.workflow import GraphDocument


QUEUE_FRONT = -1
QUEUE_BACK = 0


class StepMeta(BaseModel):
    title: str | None = None


class CompiledStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    class_type: str
    inputs: dict[str, Any] = Field(default_factory=dict)
    meta: StepMeta | None = Field(default=None, alias="_meta")

    def references(self) -> dict[str, tuple[str, int]]:
        """Inputs that point at another step, as {input_name: (origin_id, slot)}."""
        refs: dict[str, tuple[str, int]] = {}
        for name, value in self.inputs.items():
            if is_reference(value):
                refs[name] = (value[0], value[1])
        return refs


def is_reference(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) == 2
        and isinstance(value[0], str)
        and isinstance(value[1], int)
        and not isinstance(value[1], bool)
    )


class Prompt(BaseModel):
    """A compiled prompt plus the graph document it was compiled from."""

    workflow: GraphDocument
    output: dict[str, CompiledStep] = Field(default_factory=dict)

    def output_payload(self) -> dict[str, Any]:
        """The wire form of `output` (aliases applied, unset meta omitted)."""
        return {
            node_id: step.model_dump(by_alias=True, exclude_none=True)
            for node_id, step in self.output.items()
        }


class SubmissionRequest(BaseModel):
    number: int = QUEUE_BACK
    batch_count: int = Field(default=1, ge=1)


class ErrorDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str | None = None
    message: str = ""
    details: str | None = None
    extra_info: dict[str, Any] = Field(default_factory=dict)


class NodeError(BaseModel):
    model_config = ConfigDict(extra="allow")

    class_type: str | None = None
    errors: list[ErrorDetail] = Field(default_factory=list)
    dependent_outputs: list[Any] = Field(default_factory=list)


class QueueResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt_id: str | None = None
    number: int | None = None
    node_errors: dict[str, NodeError] = Field(default_factory=dict)


class ExecutionErrorDetail(BaseModel):
    """Payload of the backend's execution_error event."""

    model_config = ConfigDict(extra="allow")

    prompt_id: str | None = None
    node_id: str | None = None
    node_type: str | None = None
    exception_message: str = ""
    exception_type: str | None = None
    traceback: list[str] = Field(default_factory=list)


class ExecutedDetail(BaseModel):
    """Payload of the backend's executed event: one node's UI outputs."""

    model_config = ConfigDict(extra="allow")

    node: str | int
    output: dict[str, Any] | None = None
    merge: bool = False
    prompt_id: str | None = None


class BackendEvent(BaseModel):
    type: str
    data: Any = None


class QueueState(BaseModel):
    status: Literal["idle", "draining"]
    pending: list[SubmissionRequest] = Field(default_factory=list)
    last_node_errors: dict[str, NodeError] | None = None
    last_execution_error: ExecutionErrorDetail | None = None
