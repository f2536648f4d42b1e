"""
Configuration for the portal-livesync HTTP layer.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """HTTP layer configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, description="Bind port")

    cors_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins (the portal frontend)",
    )

    model_config = {"env_prefix": "LIVESYNC_"}
