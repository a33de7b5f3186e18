"""
Submission queue — serializes prompt submissions into one drain loop.

Requests are processed in enqueue order. Only one drain loop runs at a time
so every batch unit compiles against the widget state left by the previous
unit (e.g. an advanced seed). A failed unit aborts the rest of its own
request; requests queued behind it are still processed.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from graphprompt.errors import SubmissionRejected, WorkflowError
from graphprompt.models.prompt import (
    ExecutionErrorDetail,
    NodeError,
    Prompt,
    QueueState,
    SubmissionRequest,
)
from graphprompt.services.prompt_compiler import widget_hook_targets

if TYPE_CHECKING:
    from graphprompt.context import AppContext

logger = logging.getLogger(__name__)

UNKNOWN_ERROR = "(unknown error)"


# ---------------------------------------------------------------------------
# Error formatting
# ---------------------------------------------------------------------------

def format_prompt_error(error: Any) -> str:
    """Render a submission failure for display."""
    if error is None:
        return UNKNOWN_ERROR
    if isinstance(error, str):
        return error
    if isinstance(error, SubmissionRejected) and error.response:
        detail = error.response.get("error")
        if isinstance(detail, dict):
            message = str(detail.get("message") or error.message)
            if detail.get("details"):
                message += f": {detail['details']}"
        else:
            message = str(detail or error.message)
        for node_error in parse_node_errors(error.node_errors).values():
            message += f"\n{node_error.class_type}:"
            for reason in node_error.errors:
                message += f"\n    - {reason.message}: {reason.details}"
        return message
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return UNKNOWN_ERROR


def format_execution_error(error: ExecutionErrorDetail | dict[str, Any] | None) -> str:
    """Render a backend execution_error event for display."""
    if error is None:
        return UNKNOWN_ERROR
    if isinstance(error, dict):
        error = ExecutionErrorDetail.model_validate(error)
    traceback = "".join(error.traceback)
    return f"Error occurred when executing {error.node_type}:\n\n{error.exception_message}\n\n{traceback}"


def parse_node_errors(raw: Any) -> dict[str, NodeError]:
    if not isinstance(raw, dict):
        return {}
    parsed: dict[str, NodeError] = {}
    for node_id, value in raw.items():
        try:
            parsed[str(node_id)] = NodeError.model_validate(value)
        except ValidationError:
            logger.warning("Ignoring malformed node error for node %s: %r", node_id, value)
    return parsed


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class SubmissionQueue:
    def __init__(self, context: AppContext):
        self.context = context
        self._pending: deque[SubmissionRequest] = deque()
        self._draining = False

    @property
    def draining(self) -> bool:
        return self._draining

    @property
    def pending(self) -> list[SubmissionRequest]:
        return list(self._pending)

    def state(self) -> QueueState:
        return QueueState(
            status="draining" if self._draining else "idle",
            pending=self.pending,
            last_node_errors=self.context.last_node_errors,
            last_execution_error=self.context.last_execution_error,
        )

    async def enqueue(self, number: int = 0, batch_count: int = 1) -> None:
        """
        Queue a request and drain the queue unless a drain is already running.

        A caller that finds a drain in progress returns immediately; its
        request is processed by the running loop.
        """
        request = SubmissionRequest(number=number, batch_count=batch_count)
        self._pending.append(request)

        if self._draining:
            logger.debug("Drain in progress; queued request %s", request)
            return

        self._draining = True
        self.context.last_node_errors = None
        try:
            while self._pending:
                current = self._pending.popleft()
                try:
                    await self._process(current)
                except Exception:
                    logger.exception("Processing request %s failed; continuing with the queue", current)
        finally:
            self._draining = False

        self.context.surface.dispatch("prompt_queued", {"number": number, "batch_count": batch_count})

    async def _process(self, request: SubmissionRequest) -> None:
        ctx = self.context
        for unit in range(request.batch_count):
            try:
                prompt = await ctx.graph_to_prompt()
            except WorkflowError as exc:
                logger.warning("Compilation failed; dropping request %s: %s", request, exc)
                ctx.surface.show_dialog(format_prompt_error(exc))
                return
            except Exception as exc:
                logger.exception("Compilation failed; dropping request %s", request)
                ctx.surface.show_dialog(format_prompt_error(exc))
                return

            failed = False
            try:
                result = await ctx.backend.queue_prompt(request.number, prompt)
            except SubmissionRejected as exc:
                failed = True
                logger.warning("Backend rejected unit %d of request %s: %s", unit + 1, request, exc)
                ctx.surface.show_dialog(format_prompt_error(exc))
                if exc.response:
                    ctx.last_node_errors = parse_node_errors(exc.node_errors)
                    ctx.surface.redraw()
            except Exception as exc:
                failed = True
                logger.exception("Submitting unit %d of request %s failed", unit + 1, request)
                ctx.surface.show_dialog(format_prompt_error(exc))
            else:
                ctx.last_node_errors = result.node_errors or None
                if ctx.last_node_errors:
                    ctx.surface.redraw()

            # e.g. advance a random seed after every generation
            self._run_after_queued(prompt)
            ctx.surface.redraw()
            await ctx.surface.update_queue()

            if failed:
                return

    def _run_after_queued(self, prompt: Prompt) -> None:
        graph = self.context.graph
        for data in prompt.workflow.nodes:
            node = graph.get_node_by_id(data.id)
            if node is None:
                continue
            for target in widget_hook_targets(node):
                for widget in target.widgets:
                    if widget.after_queued is None:
                        continue
                    try:
                        widget.after_queued()
                    except Exception:
                        logger.exception("after_queued hook of widget '%s' on node %s failed", widget.name, target.id)
