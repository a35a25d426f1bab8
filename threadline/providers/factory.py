"""Build the assistant backend from configuration."""

from __future__ import annotations

from threadline.config.schema import Config
from threadline.providers.base import AssistantBackend
from threadline.providers.openai_assistants import OpenAIAssistantsClient


def build_backend(config: Config) -> AssistantBackend:
    """
    Create the Assistants API client for ``config``.

    Raises:
        ValueError: no API key is configured.
    """
    api_key = config.get_api_key()
    if not api_key:
        raise ValueError(
            "No API key configured for the assistant backend. "
            "Set assistant.apiKey or OPENAI_API_KEY."
        )
    return OpenAIAssistantsClient(
        api_key=api_key,
        api_base=config.assistant.api_base,
        organization=config.assistant.organization or None,
        timeout=config.assistant.request_timeout_s,
    )
