"""Configuration management for the conversation engine.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """LLM provider configuration."""
    provider: str = Field(
        default="azure_openai",
        description="LLM provider: azure_openai, openai, anthropic, mock"
    )
    model: str = Field(default="gpt-4", description="Model name")
    api_key: Optional[str] = Field(default=None, description="API key")
    api_base: Optional[str] = Field(default=None, description="API base URL")
    api_version: Optional[str] = Field(default="2024-02-15-preview", description="API version")
    deployment_name: Optional[str] = Field(default=None, description="Azure deployment name")
    temperature: float = Field(default=0.2, ge=0, le=2)
    max_tokens: int = Field(default=1024, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore"
    )


class ToolServerSettings(BaseModel):
    """A tool server reachable for every conversation."""
    name: str
    url: str
    timeout: float = Field(default=30.0, gt=0)
    auth_token: Optional[str] = None


class OrchestratorSettings(BaseSettings):
    """Conversation engine configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Timeouts
    reasoner_timeout_seconds: float = Field(default=30.0, gt=0)
    tool_timeout_seconds: float = Field(default=60.0, gt=0)

    # Clarifications
    phrase_questions: bool = Field(
        default=False,
        description="Ask the LLM to phrase clarification questions"
    )

    # Conversation state
    state_backend: str = Field(default="memory", description="memory or file")
    state_path: str = Field(default="data/conversation_state")
    state_ttl_minutes: int = Field(default=24 * 60)

    # Chat history
    max_history_length: int = Field(default=50)
    history_window: int = Field(default=10)

    # Tool servers
    tool_servers: list[ToolServerSettings] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    llm: LLMSettings = Field(default_factory=LLMSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("MCP_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
