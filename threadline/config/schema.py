"""Configuration schema using Pydantic."""

import os
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from threadline.utils.helpers import get_data_path


class WhatsAppConfig(BaseModel):
    """WhatsApp channel configuration."""
    enabled: bool = True
    bridge_url: str = "ws://localhost:3001"
    bridge_token: str = ""  # Shared secret sent to the bridge on connect
    allow_from: list[str] = Field(default_factory=list)  # Allowed phone numbers


class ChannelsConfig(BaseModel):
    """Configuration for chat channels."""
    whatsapp: WhatsAppConfig = Field(default_factory=WhatsAppConfig)


class AssistantConfig(BaseModel):
    """Assistant backend configuration."""
    api_key: str = ""
    api_base: str = "https://api.openai.com/v1"
    assistant_id: str = ""
    organization: str = ""
    request_timeout_s: float = 60.0


class RunPolicyConfig(BaseModel):
    """Run submission and completion-watch policy."""
    initial_budget: int = 50  # max_completion_tokens of the first run
    budget_increment: int = 50  # added on every incomplete run
    timeout_seconds: float = 30.0  # cumulative, measured from the first run
    poll_interval_seconds: float = 1.0
    message_page_size: int = 20


class StorageConfig(BaseModel):
    """Local persistence locations."""
    threads_file: str = ""  # empty: <data dir>/threads.json
    staging_dir: str = ""  # empty: system temp dir


class Config(BaseSettings):
    """Root configuration for threadline."""
    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    runs: RunPolicyConfig = Field(default_factory=RunPolicyConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)

    @property
    def threads_path(self) -> Path:
        """Resolved contact->thread registry file."""
        raw = self.storage.threads_file or os.environ.get("THREADS_FILE", "")
        if raw:
            return Path(raw).expanduser()
        return get_data_path() / "threads.json"

    @property
    def staging_path(self) -> Path | None:
        """Directory for transient attachment files, None for the system default."""
        if not self.storage.staging_dir:
            return None
        return Path(self.storage.staging_dir).expanduser()

    @property
    def metrics_path(self) -> Path:
        return get_data_path() / "metrics" / "events.jsonl"

    def get_api_key(self) -> str | None:
        """API key from config, falling back to the plain OPENAI_API_KEY variable."""
        return self.assistant.api_key or os.environ.get("OPENAI_API_KEY") or None

    def get_assistant_id(self) -> str | None:
        """Assistant id from config, falling back to the plain ASSISTANT_ID variable."""
        return self.assistant.assistant_id or os.environ.get("ASSISTANT_ID") or None

    model_config = SettingsConfigDict(
        env_prefix="THREADLINE_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )
