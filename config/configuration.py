"""
Configuration Management Module.
Loads configuration from config.yaml and allows overrides via environment variables.
"""
from typing import Optional
from pathlib import Path
import yaml
from pydantic import BaseModel, Field
import structlog

from config.settings import settings
from services.common.exceptions import ConfigurationError

logger = structlog.get_logger()

# --- Configuration Models ---

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 9310
    transport: str = "stdio"
    log_level: str = "INFO"
    json_logs: bool = True

class AnalyzerConfig(BaseModel):
    """Thresholds used by the plan analyzer rules."""
    predicate_truncate_length: int = 200
    udf_critical_elapsed_ms: float = 1000.0
    row_mismatch_ratio: float = 10.0
    row_mismatch_critical_factor: float = 100.0

class ReportConfig(BaseModel):
    max_plan_xml_length: int = 20_000_000
    statement_text_truncate_length: int = 2000
    top_operators: int = 5
    default_tree_depth: int = 6

class PlanMonitorConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)

# --- Loader Logic ---

# Settings field -> ServerConfig attribute
_SERVER_ENV_OVERRIDES = {
    "MCP_TRANSPORT": "transport",
    "MCP_HOST": "host",
    "MCP_PORT": "port",
    "LOG_LEVEL": "log_level",
    "LOG_JSON": "json_logs",
}

class ConfigLoader:
    _instance: Optional[PlanMonitorConfig] = None

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> PlanMonitorConfig:
        """
        Load configuration from YAML and override with environment variables.
        Singleton pattern to avoid reloading.
        """
        if cls._instance:
            return cls._instance

        path = Path(config_path or settings.get_config_path())
        if not path.is_absolute():
            path = Path.cwd() / path

        config_data = {}
        if path.exists():
            try:
                with open(path, "r") as f:
                    config_data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.error("config_load_error", error=str(e), path=str(path))
                raise ConfigurationError(f"Failed to load config file at {path}: {e}",
                                         details={"path": str(path)})
        else:
            logger.warning("config_file_not_found", path=str(path))

        try:
            config = PlanMonitorConfig(**config_data)
        except (TypeError, ValueError) as e:
            logger.error("config_validation_error", error=str(e))
            raise ConfigurationError(f"Invalid Configuration: {e}", details={"path": str(path)})

        # Environment wins over the file for the server section
        for field_name, target in _SERVER_ENV_OVERRIDES.items():
            if field_name in settings.model_fields_set:
                setattr(config.server, target, getattr(settings, field_name))
                logger.info("config_env_override", setting=field_name)

        cls._instance = config
        return config

    @classmethod
    def reset(cls) -> None:
        """Forget the cached configuration (used by tests and reloads)."""
        cls._instance = None


def get_config() -> PlanMonitorConfig:
    return ConfigLoader.load()
