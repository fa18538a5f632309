"""Configuration management for Sanctuary."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DOMAINS = ("Identity", "Purpose", "Mindset", "Relationships", "Vision", "Action", "Legacy")


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="SANCTUARY_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider
    api_key: str | None = Field(default=None, description="API key for the OpenAI-compatible provider")
    api_base: str | None = Field(default="https://openrouter.ai/api/v1", description="Provider base URL")
    model: str = Field(default="x-ai/grok-3", description="Model for the conversational mentor")
    operator_model: str = Field(default="x-ai/grok-4-1-fast-reasoning", description="Model for the operator agent")
    review_model: str = Field(default="google/gemini-flash-1.5", description="Model for session self-review")
    max_tokens: int = Field(default=1000, description="Maximum completion tokens per round-trip")
    model_timeout_seconds: int | None = Field(default=90, description="Timeout for one model round-trip")

    # Storage
    home: Path = Field(default=Path.home() / ".sanctuary", description="Data directory")
    workspace: Path = Field(default_factory=Path.cwd, description="Workspace the operator may touch")
    database_path: Path | None = Field(default=None, description="SQLite database exposed to read-only queries")
    encryption_key: str | None = Field(default=None, description="Base64 encoded 32 byte content key")

    # Conversation
    chat_history_limit: int = Field(default=15, ge=0, description="Prior messages included as context")
    max_message_length: int = Field(default=1000, ge=1, description="Longest accepted user message")
    domains: tuple[str, ...] = Field(default=DEFAULT_DOMAINS, description="Domains the mentor tools accept")
    rate_limit_requests: int = Field(default=20, ge=1, description="Turns per user per window")
    rate_limit_window_seconds: int = Field(default=60, ge=1, description="Rate limit window length")

    # Operator
    operator_max_rounds: int = Field(default=25, ge=1, description="Round-trip budget for one operator turn")
    shell_timeout_seconds: int = Field(default=30, ge=1, description="Timeout for operator shell commands")

    # Review
    review_every_messages: int = Field(default=10, ge=1, description="Assistant messages between reviews")
    review_max_attempts: int = Field(default=3, ge=1, description="Attempts before a review job is dropped")

    log_level: str = Field(default="INFO", description="Log level")

    def resolve_home(self) -> Path:
        home = self.home.expanduser().resolve()
        home.mkdir(parents=True, exist_ok=True)
        return home


def get_settings(workspace: Path | None = None) -> Settings:
    """Get application settings, optionally overriding the workspace."""
    if workspace is None:
        return Settings()
    return Settings(workspace=workspace)
