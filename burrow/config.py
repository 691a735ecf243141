"""Configuration management using pydantic-settings."""

from functools import lru_cache
from uuid import uuid4

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelaySettings(BaseSettings):
    """Relay settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
    )

    host: str = Field(default="0.0.0.0", description="Interface the relay listens on")
    port: int = Field(default=3001, description="Port the relay listens on")
    request_timeout: float = Field(
        default=30.0, description="Seconds to wait for a reply before answering 504", ge=0.1
    )
    websocket_heartbeat: float = Field(default=30.0, description="Tunnel WebSocket ping interval")
    max_body_size: int = Field(
        default=50 * 1024 * 1024, description="Largest accepted public request body in bytes"
    )
    log_level: str = Field(default="INFO", description="Logging level")


class AgentSettings(BaseSettings):
    """Agent settings loaded from ``AGENT_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_",
        case_sensitive=False,
        extra="ignore",
    )

    relay_url: str = Field(default="ws://localhost:3001", description="Relay base URL")
    name: str = Field(default_factory=lambda: f"tunnel-{uuid4().hex[:8]}", description="Tunnel name")
    local_url: str = Field(default="http://localhost:7860", description="Local service base URL")
    tunnel_id: str = Field(default_factory=lambda: str(uuid4()), description="Registration token")
    connect_timeout: float = Field(default=10.0, description="Local service connect timeout", gt=0)
    read_timeout: float = Field(default=25.0, description="Local service read timeout", gt=0)
    reconnect_delay: float = Field(default=5.0, description="Delay before reconnecting", ge=0)
    log_level: str = Field(default="INFO", description="Logging level")


@lru_cache
def get_settings() -> RelaySettings:
    """Get the relay settings instance."""
    return RelaySettings()


@lru_cache
def get_agent_settings() -> AgentSettings:
    """Get the agent settings instance."""
    return AgentSettings()
