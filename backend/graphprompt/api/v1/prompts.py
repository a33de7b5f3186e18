"""
Workflow API endpoints.

The current graph lives in the application context; documents are loaded
into it, compiled from it and queued from it.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from graphprompt.context import AppContext
from graphprompt.errors import GraphConfigurationError, WorkflowError
from graphprompt.models.prompt import BackendEvent, QueueState, SubmissionRequest
from graphprompt.services.graph_loader import is_api_json

logger = logging.getLogger(__name__)

router = APIRouter()


def get_context(request: Request) -> AppContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Application context not ready")
    return context


def error_diagnostics(exc: WorkflowError) -> dict[str, Any]:
    diagnostics: dict[str, Any] = {"type": type(exc).__name__}
    for attr in ("location", "source", "node_ids", "node_id", "slot", "hops"):
        value = getattr(exc, attr, None)
        if value is not None:
            diagnostics[attr] = value
    return diagnostics


def workflow_error_response(exc: WorkflowError) -> JSONResponse:
    message = exc.message if isinstance(exc, GraphConfigurationError) else str(exc)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"message": message, "diagnostics": error_diagnostics(exc)},
    )


def missing_node_types_payload(result) -> list[dict[str, Any]]:
    return [
        {"type": m.node_type, "sanitized_type": m.sanitized_type, "hint": m.hint}
        for m in result.missing_node_types
    ]


@router.post("/graph")
async def load_graph(
    document: dict[str, Any] | None = Body(default=None),
    ctx: AppContext = Depends(get_context),
):
    """
    Load a workflow document into the editor graph. An empty body loads the
    default workflow; a compiled prompt is rebuilt into a graph.
    """
    if is_api_json(document):
        result = await ctx.load_api_json(document)
        if result.graph is None:
            return JSONResponse(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                content={
                    "message": "Prompt references node types that are not registered",
                    "diagnostics": {
                        "type": "MissingNodeType",
                        "missing_node_types": missing_node_types_payload(result),
                    },
                },
            )
        return {"node_count": len(result.graph), "missing_node_types": []}

    result = await ctx.load_graph_data(document)
    if result is None:
        return workflow_error_response(ctx.last_load_error)
    return {
        "node_count": len(result.graph),
        "missing_node_types": missing_node_types_payload(result),
    }


@router.get("/graph")
async def get_graph(ctx: AppContext = Depends(get_context)):
    return ctx.graph.serialize().model_dump(mode="json", exclude_none=True)


@router.post("/prompt/compile")
async def compile_prompt(ctx: AppContext = Depends(get_context)):
    """Compile the current graph without submitting it."""
    try:
        prompt = await ctx.graph_to_prompt()
    except WorkflowError as exc:
        logger.warning("Compilation failed: %s", exc)
        return workflow_error_response(exc)
    return {
        "output": prompt.output_payload(),
        "workflow": prompt.workflow.model_dump(mode="json", exclude_none=True),
    }


@router.post("/prompt", response_model=QueueState)
async def queue_prompt(request: SubmissionRequest, ctx: AppContext = Depends(get_context)):
    """
    Queue the current graph. Returns once this request has been drained, or
    immediately if another drain loop will pick it up.
    """
    await ctx.queue_prompt(request.number, request.batch_count)
    return ctx.queue.state()


@router.get("/queue", response_model=QueueState)
async def get_queue(ctx: AppContext = Depends(get_context)):
    return ctx.queue.state()


@router.post("/node-defs/refresh")
async def refresh_node_defs(ctx: AppContext = Depends(get_context)):
    """Re-fetch node definitions and update combo choices in the graph."""
    try:
        reset = await ctx.refresh_combo_in_nodes()
    except httpx.HTTPError as e:
        logger.exception("Failed to fetch node definitions")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return {"node_types": len(ctx.registry.definitions), "reset_widgets": reset}


@router.post("/events")
async def backend_event(event: BackendEvent, ctx: AppContext = Depends(get_context)):
    """Forward a backend websocket event (execution_start, executing, executed, execution_error)."""
    try:
        handled = ctx.handle_backend_event(event.type, event.data)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return {"handled": handled, "running_node_id": ctx.running_node_id}
