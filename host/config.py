import logging
import os
from typing import Dict, Any, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

logger = logging.getLogger(__name__)

# Environment variable prefix
ENV_PREFIX = "LOOM_"


class StorageConfig(BaseSettings):
    """Configuration for the event-log storage backend."""
    storage_type: str = Field(default="file", description="Storage backend ('file' or 'sqlite')")
    base_dir: str = Field(default="storage_data", description="Root directory for the file backend")
    pretty_print_json: bool = Field(default=True, description="Indent JSON written by the file backend")
    sqlite_db_path: str = Field(default="storage_data/loom.db", description="Database path for the sqlite backend")
    sqlite_timeout: float = Field(default=30.0, description="SQLite connection timeout in seconds")
    sqlite_wal_mode: bool = Field(default=True, description="Enable WAL journal mode for sqlite")

    model_config = SettingsConfigDict(env_prefix=f'{ENV_PREFIX}STORAGE_', extra='ignore')


class NotificationConfig(BaseSettings):
    """Configuration for per-space notification fan-out."""
    max_delivery_attempts: int = Field(default=3, ge=1, description="Attempts per subscriber before a notification is dropped")
    retry_delay_seconds: float = Field(default=0.0, ge=0.0, description="Pause between delivery attempts")
    max_queue_size: int = Field(default=1000, ge=1, description="Notifications queued per subscriber before new ones are dropped")
    max_backlog: int = Field(default=1000, ge=1, description="Notifications held before the hub starts before new ones are dropped")

    model_config = SettingsConfigDict(env_prefix=f'{ENV_PREFIX}NOTIFY_', extra='ignore')


class UplinkConfig(BaseSettings):
    """Configuration for uplink connections to remote spaces."""
    host_url: str = Field(default="http://localhost:6100", description="Socket.IO URL of the remote space host")
    history_timeout_seconds: float = Field(default=10.0, gt=0, description="Timeout for a single HistoryRequest round trip")
    history_page_size: int = Field(default=100, ge=1, description="max_events requested per HistoryRequest page")
    connect_timeout_seconds: float = Field(default=10.0, gt=0, description="Timeout for the connect handshake")
    agent_id: Optional[str] = Field(default=None, description="Agent id presented in ConnectRequest credentials")
    agent_token: Optional[str] = Field(default=None, description="Token presented in ConnectRequest credentials")
    shared_secret: Optional[str] = Field(default=None, description="HMAC secret used to sign the agent id")

    model_config = SettingsConfigDict(env_prefix=f'{ENV_PREFIX}UPLINK_', extra='ignore')


class CompressionConfig(BaseSettings):
    """Configuration for the context compression engine."""
    default_budget_tokens: int = Field(default=4000, ge=1, description="Budget used when the caller passes none")
    tokenizer_model: Optional[str] = Field(default="gpt-4", description="Model whose tiktoken encoding counts tokens; empty to estimate by characters")
    chars_per_token: int = Field(default=4, ge=1, description="Characters per token when no tiktoken encoding is used")
    condensed_chars: int = Field(default=400, ge=16, description="Length of an element rendered at the condensed level")
    summary_chars: int = Field(default=160, ge=16, description="Maximum length of a generated summary")
    recent_window_seconds: float = Field(default=3600.0, description="Bundles younger than this are 'recent'")
    mid_term_window_seconds: float = Field(default=7 * 24 * 3600.0, description="Bundles younger than this are 'mid_term'")
    high_relevance_threshold: float = Field(default=0.5, ge=0.0, le=1.0, description="Thread score at or above which it is kept whole")
    low_relevance_threshold: float = Field(default=0.15, ge=0.0, le=1.0, description="Thread score below which only a summary is kept")
    historical_key_messages: int = Field(default=3, ge=0, description="Messages kept verbatim in a historical bundle")

    model_config = SettingsConfigDict(env_prefix=f'{ENV_PREFIX}COMPRESSION_', extra='ignore')


class HostSettings(BaseSettings):
    """Main configuration settings loaded from environment variables."""

    # Logging Settings
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    log_format: str = Field(default='%(asctime)s - %(name)s - %(levelname)s - %(message)s', description="Logging format string")
    log_to_file: bool = Field(default=False, description="Enable logging to file with rotation")
    log_file_path: str = Field(default="logs/loom.log", description="Path to the log file (directory will be created)")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, description="Maximum size of one log file before rotation")
    log_max_files: int = Field(default=10, description="Maximum number of log files to keep")

    # Tracing
    tracing_enabled: bool = Field(default=False, description="Export OpenTelemetry traces and logs over OTLP")
    service_name: str = Field(default="loom", description="OpenTelemetry service.name resource attribute")

    # Remote space host
    host_bind: str = Field(default="0.0.0.0", description="Bind address of the Socket.IO space host")
    host_port: int = Field(default=6100, description="Port of the Socket.IO space host")
    # JSON object: token -> {"agent_id": ..., "permissions": [...]}
    host_tokens_json: str = Field(default="{}", description="Token registry for the space host")
    host_shared_secret: Optional[str] = Field(default=None, description="HMAC secret for agent signatures (disabled if unset)")

    storage: StorageConfig = Field(default_factory=StorageConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    uplink: UplinkConfig = Field(default_factory=UplinkConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)

    # Parsed token registry (populated after initialization)
    host_tokens: Dict[str, Dict[str, Any]] = {}

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        env_prefix=ENV_PREFIX,
        extra='ignore',
        case_sensitive=False
    )

    def __init__(self, **data: Any):
        super().__init__(**data)
        try:
            import json
            tokens = json.loads(self.host_tokens_json)
            if not isinstance(tokens, dict):
                raise ValueError("token registry must be a JSON object")
            self.host_tokens = tokens
        except Exception as e:
            logger.error(f"Failed to parse LOOM_HOST_TOKENS_JSON: {e}", exc_info=True)


def load_settings() -> HostSettings:
    """Loads .env (without overriding the real environment) and builds HostSettings."""
    logger.info(f"Loading host configuration from .env file and environment variables (prefix: '{ENV_PREFIX}')...")

    try:
        from dotenv import load_dotenv
        env_loaded = load_dotenv('.env', override=False)
        logger.debug(f".env loaded: {env_loaded}")
    except Exception as e:
        logger.warning(f"Failed to load .env file: {e}")

    loom_vars = [k for k in os.environ if k.startswith(ENV_PREFIX)]
    logger.info(f"Found {len(loom_vars)} {ENV_PREFIX} environment variables: {loom_vars}")

    try:
        settings = HostSettings()
        logger.info(f"Host configuration loaded (storage: {settings.storage.storage_type}, "
                    f"{len(settings.host_tokens)} host tokens).")
        return settings
    except Exception as e:
        logger.exception(f"Critical error loading host configuration: {e}")
        raise ValueError(f"Failed to load configuration: {e}") from e
