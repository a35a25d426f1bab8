"""Assistant backend over the OpenAI Assistants v2 REST API."""

from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from threadline.providers.base import AssistantBackend


class OpenAIAssistantsClient(AssistantBackend):
    """
    Thin async client for threads, runs, messages and files.

    Every call raises ``httpx.HTTPError`` (including ``HTTPStatusError`` for
    non-2xx responses); nothing is retried here.
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = "https://api.openai.com/v1",
        organization: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "assistants=v2",
        }
        if organization:
            headers["OpenAI-Organization"] = organization
        self.api_base = api_base.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._client.request(method, url, **kwargs)
        if response.is_error:
            logger.debug(f"Assistants API {method} {url} -> {response.status_code}: {response.text[:300]}")
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise httpx.DecodingError(f"Unexpected response body for {method} {url}")
        return data

    async def create_thread(self, messages: list[dict[str, Any]]) -> str:
        data = await self._request("POST", "/threads", json={"messages": messages})
        return str(data["id"])

    async def add_message(self, thread_id: str, message: dict[str, Any]) -> str:
        data = await self._request("POST", f"/threads/{thread_id}/messages", json=message)
        return str(data["id"])

    async def create_run(
        self,
        thread_id: str,
        assistant_id: str,
        max_completion_tokens: int,
    ) -> str:
        payload = {
            "assistant_id": assistant_id,
            "max_completion_tokens": int(max_completion_tokens),
        }
        data = await self._request("POST", f"/threads/{thread_id}/runs", json=payload)
        return str(data["id"])

    async def get_run(self, thread_id: str, run_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/threads/{thread_id}/runs/{run_id}")

    async def list_messages(
        self,
        thread_id: str,
        order: str = "desc",
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/threads/{thread_id}/messages",
            params={"order": order, "limit": int(limit)},
        )
        items = data.get("data", [])
        return [item for item in items if isinstance(item, dict)]

    async def upload_file(self, path: Path, purpose: str = "assistants") -> str:
        with open(path, "rb") as f:
            files = {
                "file": (path.name, f),
                "purpose": (None, purpose),
            }
            data = await self._request("POST", "/files", files=files)
        return str(data["id"])

    async def aclose(self) -> None:
        await self._client.aclose()
