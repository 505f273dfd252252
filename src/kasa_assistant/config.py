"""Application configuration using Pydantic settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Chat completion endpoint (empty defaults = chat assistant disabled)
    chat_url: str = Field(
        "", alias="CHAT_URL",
        description="URL of the hosted chat completion endpoint that streams event-stream replies. Empty = chat disabled.",
    )
    chat_api_key: str = Field(
        "", alias="CHAT_API_KEY",
        description="Bearer credential sent with every chat request.",
    )
    chat_timeout: float = Field(
        60.0, alias="CHAT_TIMEOUT",
        description="Read/write timeout in seconds for the streamed chat request. A stalled stream fails after this long.",
    )
    chat_connect_timeout: float = Field(
        10.0, alias="CHAT_CONNECT_TIMEOUT",
        description="Timeout in seconds for establishing the chat connection.",
    )

    # Stream decoding
    stream_max_payload_retries: int = Field(
        3, alias="STREAM_MAX_PAYLOAD_RETRIES",
        description="How many times an unparseable data payload is retried with continuation lines before it is discarded.",
    )
    stream_max_buffer_chars: int = Field(
        1_048_576, alias="STREAM_MAX_BUFFER_CHARS",
        description="Max characters of unresolved stream text held in memory. Exceeding it fails the exchange.",
    )

    # Chat sessions
    chat_session_ttl: int = Field(
        3600, alias="CHAT_SESSION_TTL",
        description="TTL in seconds for in-memory chat sessions. Sessions expire after this period of inactivity.",
    )
    chat_session_maxsize: int = Field(
        1000, alias="CHAT_SESSION_MAXSIZE",
        description="Max number of concurrent chat sessions in memory. LRU eviction when exceeded.",
    )

    # Permit applications
    permit_id_prefix: str = Field(
        "KASA", alias="PERMIT_ID_PREFIX",
        description="Prefix of the human-shareable application IDs (e.g. KASA-LZ3K8F2A-7QX1PB).",
    )
    permit_validity_days: int = Field(
        365, alias="PERMIT_VALIDITY_DAYS",
        description="Days an approved permit stays valid, counted from the approval date.",
    )

    # Server
    host: str = Field(
        "0.0.0.0", alias="HOST",
        description="Host address to bind the aiohttp server to.",
    )
    port: int = Field(
        8080, alias="PORT",
        description="Port number for the aiohttp server.",
    )

    # Logging
    log_level: str = Field(
        "INFO", alias="LOG_LEVEL",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, or CRITICAL.",
    )
    log_file: str = Field(
        "", alias="LOG_FILE",
        description="Path to log file for file-based logging with rotation. Empty = console only.",
    )
    log_file_max_bytes: int = Field(
        10_485_760, alias="LOG_FILE_MAX_BYTES",
        description="Max size in bytes per log file before rotation. Default: 10 MB.",
    )
    log_file_backup_count: int = Field(
        5, alias="LOG_FILE_BACKUP_COUNT",
        description="Number of rotated backup log files to keep.",
    )

    @property
    def chat_enabled(self) -> bool:
        return bool(self.chat_url and self.chat_api_key)


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
