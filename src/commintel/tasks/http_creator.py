"""HTTP task creator for the external task service.

POSTs a TaskRequest as JSON to ``{base_url}/tasks`` and returns the ``id``
from the response body. Requests are made with a pooled requests.Session
on a worker thread so the event loop is never blocked.

No retries happen here. A POST that timed out may still have created the
task, so repeating it automatically could create a duplicate.

Usage:
    from commintel.tasks.http_creator import HttpTaskCreator

    creator = HttpTaskCreator("https://tasks.internal.example/api", token=token)
    task_id = await creator.create_task(request)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import requests

from commintel.core.errors import TaskBridgeFailure
from commintel.core.logging import get_logger

if TYPE_CHECKING:
    from commintel.tasks.bridge import TaskRequest

logger = get_logger(__name__)

TASKS_ENDPOINT = "/tasks"


class HttpTaskCreator:
    """Task creator backed by a JSON HTTP API.

    Attributes:
        base_url: Task service base URL
        timeout_seconds: Per-request socket timeout
        session: Pooled HTTP session
    """

    def __init__(self, base_url: str, token: str | None = None, timeout_seconds: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = requests.Session()
        self.session.headers.update(
            {"Content-Type": "application/json", "Accept": "application/json"}
        )
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    async def create_task(self, request: TaskRequest) -> str:
        """Create a task and return its id.

        Raises:
            TaskBridgeFailure: On transport errors (retryable), HTTP errors
                (retryable for 5xx and 429), or a response without an id
        """
        return await asyncio.to_thread(self._post, request)

    def _post(self, request: TaskRequest) -> str:
        url = self.base_url + TASKS_ENDPOINT
        try:
            response = self.session.post(url, json=request.to_dict(), timeout=self.timeout_seconds)
        except requests.Timeout as e:
            logger.error("task_service_timeout", url=url, item_id=request.source_item_id)
            raise TaskBridgeFailure(
                f"Task service at {self.base_url} timed out after {self.timeout_seconds}s.",
                item_id=request.source_item_id,
                retryable=True,
            ) from e
        except requests.RequestException as e:
            logger.error("task_service_unreachable", url=url, error=str(e))
            raise TaskBridgeFailure(
                f"Cannot reach task service at {self.base_url}: {e}. "
                "Check task_bridge.base_url in config.yaml and network access.",
                item_id=request.source_item_id,
                retryable=True,
            ) from e

        if response.status_code >= 400:
            self._handle_error_response(response, request)

        try:
            body = response.json()
        except ValueError as e:
            raise TaskBridgeFailure(
                f"Task service returned a non-JSON response (HTTP {response.status_code}).",
                item_id=request.source_item_id,
                status_code=response.status_code,
            ) from e

        task_id = body.get("id") if isinstance(body, dict) else None
        if not task_id:
            raise TaskBridgeFailure(
                "Task service response has no 'id' field.",
                item_id=request.source_item_id,
                status_code=response.status_code,
            )
        return str(task_id)

    def _handle_error_response(self, response: requests.Response, request: TaskRequest) -> None:
        try:
            error_data = response.json()
            message = error_data.get("error") or error_data.get("message") or response.text
        except ValueError:
            message = response.text or f"HTTP {response.status_code}"
        message = str(message)[:200]

        logger.error(
            "task_service_error",
            status_code=response.status_code,
            item_id=request.source_item_id,
            error_message=message,
        )
        retryable = response.status_code == 429 or response.status_code >= 500
        hint = ""
        if response.status_code in (401, 403):
            hint = " Check the token named by task_bridge.token_env."
        raise TaskBridgeFailure(
            f"Task service rejected the request (HTTP {response.status_code}): {message}.{hint}",
            item_id=request.source_item_id,
            retryable=retryable,
            status_code=response.status_code,
        )

    def close(self) -> None:
        self.session.close()
