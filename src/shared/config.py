"""Configuration management for the CRM agent endpoint.

Supports a YAML configuration file and environment variable overrides.
Configuration is loaded once and cached.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Agent endpoint configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8001)
    endpoint_path: str = Field(default="/api/mcp")

    # Identity advertised to agent clients
    server_name: str = Field(default="fullhouse-crm-mcp")
    server_version: str = Field(default="0.1.0")
    protocol_version: str = Field(default="2025-11-25")

    # Credentials and data
    credentials_path: Optional[str] = Field(
        default="config/credentials.yaml",
        description="YAML file with API key records for the in-memory store",
    )
    seed_demo_data: bool = Field(default=True, description="Seed the in-memory CRM backend")

    # Auditing
    enable_audit: bool = Field(default=True)
    audit_log_path: str = Field(default="logs/audit.log")
    audit_max_pending: int = Field(default=10_000, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="CRM_MCP_SERVER_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    server: ServerSettings = Field(default_factory=ServerSettings)

    model_config = SettingsConfigDict(
        env_prefix="CRM_MCP_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file; a missing file yields an empty dict."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("CRM_MCP_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
