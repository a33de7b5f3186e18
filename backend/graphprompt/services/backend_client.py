"""
Backend client — submits compiled prompts to the job-processing backend.

    POST /prompt        queue a prompt
    GET  /prompt        queue status ({"exec_info": {"queue_remaining": n}})
    GET  /object_info   node definitions
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from graphprompt.errors import SubmissionRejected
from graphprompt.models.prompt import QUEUE_FRONT, Prompt, QueueResponse

logger = logging.getLogger(__name__)


class BackendClient(ABC):
    """Interface for the submission backend."""

    @abstractmethod
    async def queue_prompt(self, number: int, prompt: Prompt) -> QueueResponse:
        """Submit a prompt; raise SubmissionRejected if the backend refuses it."""

    @abstractmethod
    async def get_node_defs(self) -> dict[str, Any]:
        """Node definitions keyed by class tag (the object_info payload)."""

    @abstractmethod
    async def get_queue_status(self) -> dict[str, Any]:
        ...

    async def aclose(self) -> None:
        return None


def build_prompt_body(client_id: str, number: int, prompt: Prompt) -> dict[str, Any]:
    body: dict[str, Any] = {
        "client_id": client_id,
        "prompt": prompt.output_payload(),
        "extra_data": {
            "extra_pnginfo": {
                "workflow": prompt.workflow.model_dump(mode="json", exclude_none=True),
            },
        },
    }
    if number == QUEUE_FRONT:
        body["front"] = True
    elif number != 0:
        body["number"] = number
    return body


class HttpBackendClient(BackendClient):
    def __init__(
        self,
        base_url: str,
        *,
        client_id: str,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def queue_prompt(self, number: int, prompt: Prompt) -> QueueResponse:
        body = build_prompt_body(self.client_id, number, prompt)
        response = await self._client.post("/prompt", json=body)

        if response.status_code != 200:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                raise SubmissionRejected(
                    f"Backend rejected prompt ({response.status_code})",
                    response=payload,
                    status_code=response.status_code,
                )
            raise SubmissionRejected(
                f"{response.status_code} {response.reason_phrase}: {response.text[:500]}",
                status_code=response.status_code,
            )

        result = QueueResponse.model_validate(response.json())
        logger.info("Queued prompt %s (number=%s)", result.prompt_id, result.number)
        return result

    async def get_node_defs(self) -> dict[str, Any]:
        response = await self._client.get("/object_info")
        response.raise_for_status()
        return response.json()

    async def get_queue_status(self) -> dict[str, Any]:
        response = await self._client.get("/prompt")
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()
