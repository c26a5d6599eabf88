"""
Configuration for the Gatekeeper gateway.

Uses Pydantic Settings to load environment variables.
All settings prefixed with GATEKEEPER_ for namespace isolation.
"""

from pathlib import Path
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseSettings):
    """
    Settings for the gateway.

    All environment variables are prefixed with GATEKEEPER_.
    Example: GATEKEEPER_POLICIES_DIR, GATEKEEPER_TOOLS='{"payments": "http://payments:8081"}'
    """

    # Server
    host: str = Field("0.0.0.0", description="Bind address")
    port: int = Field(8080, description="Listen port", ge=1, le=65535)
    service_name: str = Field("gatekeeper", description="Service name in audit records")

    # Policies
    policies_dir: Path = Field(Path("policies"), description="Directory of policy documents")
    watch_policies: bool = Field(True, description="Hot-reload policy files on change")
    reload_debounce_seconds: float = Field(
        0.1,
        description="Quiet window before a changed policy file is reloaded",
        ge=0,
    )
    continue_on_condition_failure: bool = Field(
        False,
        description="Keep scanning allowances after one fails its conditions",
    )

    # Requests
    agent_header: str = Field("X-Agent-ID", description="Agent identity header")
    parent_agent_header: str = Field(
        "X-Parent-Agent-ID",
        description="Parent agent header (accepted, not acted upon)",
    )

    # Forwarding
    tools: dict[str, str] = Field(
        default_factory=lambda: {
            "payments": "http://localhost:8081",
            "files": "http://localhost:8082",
        },
        description="Tool name -> base URL",
    )
    forward_timeout_seconds: float = Field(
        30.0,
        description="Timeout for calls to downstream tools",
        gt=0,
    )
    disconnect_poll_seconds: float = Field(
        0.1,
        description="How often an in-flight forward checks for caller disconnect",
        gt=0,
    )

    # Audit & logging
    log_dir: Path = Field(Path("logs"), description="Directory for the audit log")
    log_level: str = Field("INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_prefix="GATEKEEPER_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate log level is valid.

        Raises:
            ValueError: If log level is invalid.
        """
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()

    @field_validator("tools")
    @classmethod
    def validate_tools(cls, v: dict[str, str]) -> dict[str, str]:
        """
        Validate tool base URLs and strip trailing slashes.

        Raises:
            ValueError: If a name is empty or a URL is not http(s).
        """
        normalized = {}
        for name, url in v.items():
            if not name:
                raise ValueError("Tool names must be non-empty")
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValueError(f"Invalid base URL for tool {name}: {url}")
            normalized[name] = url.rstrip("/")
        return normalized


_settings: GatewaySettings | None = None


def get_settings() -> GatewaySettings:
    """
    Get gateway settings from environment.

    Returns:
        GatewaySettings instance.
    """
    global _settings
    if _settings is None:
        _settings = GatewaySettings()  # type: ignore[call-arg]
    return _settings


def reset_settings() -> None:
    """
    Reset settings for testing.

    Clears the cached settings instance.
    """
    global _settings
    _settings = None
