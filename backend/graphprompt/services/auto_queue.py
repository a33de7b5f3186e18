"""
Re-submit the workflow when the backend queue empties.

Modes:
    instant  queue a new prompt as soon as the backend queue reaches 0
    change   queue when the queue is at 0 and the graph is (or has) changed
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from graphprompt.context import AppContext

logger = logging.getLogger(__name__)

AutoQueueMode = Literal["instant", "change"]


class AutoQueue:
    def __init__(
        self,
        context: AppContext,
        *,
        mode: AutoQueueMode = "instant",
        enabled: bool = False,
        batch_count: int = 1,
    ):
        if mode not in ("instant", "change"):
            raise ValueError(f"Unknown auto queue mode '{mode}'")
        self.context = context
        self.mode = mode
        self.enabled = enabled
        self.batch_count = batch_count
        self.last_queue_size = 0
        self.graph_has_changed = False

    @staticmethod
    def queue_remaining(status: dict[str, Any] | None) -> int | None:
        if not status:
            return None
        remaining = (status.get("exec_info") or {}).get("queue_remaining")
        return remaining if isinstance(remaining, int) else None

    async def on_status(self, status: dict[str, Any] | None) -> bool:
        """Handle a backend status update. Returns True if a prompt was queued."""
        remaining = self.queue_remaining(status)
        if remaining is None:
            return False

        queued = False
        if (
            self.last_queue_size != 0
            and remaining == 0
            and self.enabled
            and (self.mode == "instant" or self.graph_has_changed)
            and self.context.last_execution_error is None
        ):
            logger.info("Backend queue drained; auto-queueing %d prompt(s)", self.batch_count)
            self.graph_has_changed = False
            remaining += self.batch_count
            await self.context.queue_prompt(0, self.batch_count)
            queued = True

        self.last_queue_size = remaining
        return queued

    async def on_graph_changed(self) -> bool:
        """Handle a graph edit. Returns True if a prompt was queued."""
        if self.mode != "change" or not self.enabled:
            return False
        if self.last_queue_size == 0:
            self.graph_has_changed = False
            await self.context.queue_prompt(0, self.batch_count)
            return True
        self.graph_has_changed = True
        return False
