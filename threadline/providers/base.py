"""Base interface for stateful assistant backends."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any


class AssistantBackend(ABC):
    """
    Remote assistant service holding threads, runs and uploaded files.

    Implementations raise on transport or API failures; callers decide how
    each failure maps onto the error taxonomy.
    """

    @abstractmethod
    async def create_thread(self, messages: list[dict[str, Any]]) -> str:
        """Create a thread seeded with ``messages`` and return its id."""
        pass

    @abstractmethod
    async def add_message(self, thread_id: str, message: dict[str, Any]) -> str:
        """Append a message to an existing thread and return the message id."""
        pass

    @abstractmethod
    async def create_run(
        self,
        thread_id: str,
        assistant_id: str,
        max_completion_tokens: int,
    ) -> str:
        """Start a run on ``thread_id`` and return the run id."""
        pass

    @abstractmethod
    async def get_run(self, thread_id: str, run_id: str) -> dict[str, Any]:
        """Fetch the current run object (must include ``status``)."""
        pass

    @abstractmethod
    async def list_messages(
        self,
        thread_id: str,
        order: str = "desc",
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """List thread messages, most recent first by default."""
        pass

    @abstractmethod
    async def upload_file(self, path: Path, purpose: str = "assistants") -> str:
        """Upload a local file and return the backend file id."""
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        return None
