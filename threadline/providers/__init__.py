"""Assistant backend abstraction module."""

from threadline.providers.base import AssistantBackend
from threadline.providers.factory import build_backend
from threadline.providers.openai_assistants import OpenAIAssistantsClient

__all__ = ["AssistantBackend", "OpenAIAssistantsClient", "build_backend"]
