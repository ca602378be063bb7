"""
Process-level settings loaded from environment variables and .env files.
Analyzer thresholds live in the YAML configuration (config/configuration.py).
"""
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    """
    Application settings loaded from environment variables and .env files.
    """
    model_config = SettingsConfigDict(
        env_file=('.env', '.env.local'),
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=False
    )

    # --- Logging ---
    LOG_LEVEL: str = Field("INFO", description="Logging level")
    LOG_JSON: bool = Field(True, description="Render logs as JSON lines")

    # --- MCP Server ---
    MCP_TRANSPORT: str = Field("stdio", description="MCP transport mode (stdio, sse)")
    MCP_HOST: str = Field("127.0.0.1", description="Host to bind to")
    MCP_PORT: int = Field(9310, description="Port to bind to")

    # --- Configuration file ---
    PLAN_CONFIG_PATH: Optional[str] = Field(None, description="Path to the YAML configuration file")

    def get_config_path(self) -> str:
        """Config path with the repository default applied."""
        return self.PLAN_CONFIG_PATH or "config/config.yaml"

# Global settings instance
settings = Settings()
