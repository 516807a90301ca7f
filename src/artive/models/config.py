"""Configuration models for Artive."""

from pydantic import BaseModel, Field, HttpUrl, field_validator
from pathlib import Path
from typing import Optional
import yaml
import os
import stat


DEFAULT_MODEL_ALIASES = {
    "claude-4": "anthropic/claude-3.5-sonnet-20241022",
    "gpt-5": "openai/gpt-4o",
    "gemini-pro": "google/gemini-pro-1.5-latest",
}


class LLMConfig(BaseModel):
    """Configuration for the streaming chat-completion API."""

    endpoint: HttpUrl = Field(
        default="https://openrouter.ai/api/v1",
        description="OpenAI-compatible API base URL (chat/completions is appended)"
    )

    api_key: str = Field(
        ...,
        description="API key for authentication"
    )

    default_model: str = Field(
        default="claude-4",
        description="Model key used when a task is created without one"
    )

    models: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_MODEL_ALIASES),
        description="Short model keys mapped to provider model identifiers"
    )

    temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="Sampling temperature"
    )

    max_tokens: int = Field(
        default=4000,
        ge=1,
        description="Maximum completion tokens"
    )

    app_url: str = Field(
        default="http://localhost:3000",
        description="Sent as HTTP-Referer for provider attribution"
    )

    app_title: str = Field(
        default="Artive Help",
        description="Sent as X-Title for provider attribution"
    )

    stream_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Maximum seconds for a whole completion stream (None = no cap)"
    )

    model_config = {"frozen": True}

    def resolve_model(self, model_key: str) -> str:
        """Map a short model key to the provider model id (unknown keys pass through)."""
        return self.models.get(model_key, model_key)

    def is_known_model(self, model_key: str) -> bool:
        """Accept configured keys and explicit provider ids like 'vendor/model'."""
        if model_key in self.models:
            return True
        vendor, _, name = model_key.partition("/")
        return bool(vendor and name)


class FetcherConfig(BaseModel):
    """Configuration for the WeChat article API."""

    endpoint: HttpUrl = Field(
        default="https://www.dajiala.com/fbmain/monitor/v3/article_html",
        description="Article HTML endpoint"
    )

    api_key: str = Field(
        default="",
        description="API key (empty disables fetching)"
    )

    verify_code: str = Field(
        default="",
        description="Optional verification code configured on the account"
    )

    timeout: float = Field(
        default=30.0,
        gt=0,
        description="Request timeout in seconds"
    )

    model_config = {"frozen": True}


class StorageConfig(BaseModel):
    """Configuration for the SQLite task store."""

    database_path: str = Field(
        default="~/.local/share/artive/artive.db",
        description="Path to the SQLite database file"
    )

    @field_validator('database_path')
    @classmethod
    def expand_database_path(cls, v: str) -> str:
        """Expand ~ and make sure the parent directory can hold the file."""
        path = Path(v).expanduser()
        if path.exists() and path.is_dir():
            raise ValueError(
                f"Database path is a directory: {path}\n"
                f"Please point storage.database_path at a file"
            )
        return str(path)

    model_config = {"frozen": True}


class ServerConfig(BaseModel):
    """Configuration for the HTTP server."""

    host: str = Field(default="127.0.0.1", description="Bind address")

    port: int = Field(default=8000, ge=1, le=65535, description="Bind port")

    model_config = {"frozen": True}


class Config(BaseModel):
    """Root configuration for Artive."""

    llm: LLMConfig = Field(..., description="Chat-completion API settings")
    fetcher: FetcherConfig = Field(default_factory=FetcherConfig, description="Article API settings")
    storage: StorageConfig = Field(default_factory=StorageConfig, description="Task store settings")
    server: ServerConfig = Field(default_factory=ServerConfig, description="HTTP server settings")

    @classmethod
    def load(cls, path: Path) -> "Config":
        """
        Load configuration from YAML file.

        Validates file permissions before loading.
        Raises PermissionError if file is group/world readable.

        Args:
            path: Path to config.yaml file

        Returns:
            Validated Config instance

        Raises:
            PermissionError: If file permissions are too open
            FileNotFoundError: If config file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        if not path.exists():
            raise FileNotFoundError(
                f"Configuration file not found at {path}\n\n"
                f"Please create the file with the following format:\n\n"
                f"llm:\n"
                f"  endpoint: https://openrouter.ai/api/v1\n"
                f"  api_key: YOUR_OPENROUTER_KEY\n"
                f"  default_model: claude-4\n\n"
                f"fetcher:\n"
                f"  api_key: YOUR_ARTICLE_API_KEY\n\n"
                f"storage:\n"
                f"  database_path: ~/.local/share/artive/artive.db\n"
            )

        mode = os.stat(path).st_mode
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            raise PermissionError(
                f"Config file has overly permissive permissions: {oct(mode)}\n"
                f"Run: chmod 600 {path}"
            )

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a YAML mapping: {path}")

        return cls(**data)

    model_config = {"frozen": True}
