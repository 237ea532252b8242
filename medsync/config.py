"""
Unified Configuration Management for MedSync

Consolidates all configuration into a single source of truth using Pydantic BaseSettings.
All settings can be overridden via environment variables with MEDSYNC_ prefix.

Usage:
    from medsync.config import get_settings

    settings = get_settings()
    print(settings.relay_url)
    print(settings.poll_interval_seconds)
"""

from pathlib import Path
from typing import Literal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MedSyncSettings(BaseSettings):
    """
    Unified configuration for MedSync

    All settings can be overridden via environment variables with MEDSYNC_ prefix.
    Example: MEDSYNC_RELAY_URL=http://192.168.1.20:8765
    """

    model_config = SettingsConfigDict(
        env_prefix="MEDSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================
    # SYSTEM SETTINGS
    # ============================================

    environment: Literal["development", "production", "testing"] = Field(
        default="development",
        description="Application environment"
    )

    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    log_json: bool = Field(
        default=False,
        description="Emit structured JSON log lines"
    )

    # ============================================
    # RELAY SETTINGS
    # ============================================

    relay_url: str = Field(
        default="http://localhost:8765",
        description="Base URL of the session relay (rendezvous server)"
    )

    relay_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for a single relay request"
    )

    relay_host: str = Field(
        default="0.0.0.0",
        description="Bind host when serving the relay"
    )

    relay_port: int = Field(
        default=8765,
        description="Bind port when serving the relay"
    )

    session_ttl_seconds: int = Field(
        default=300,
        description="Lifetime of a sync session before the pairing code expires"
    )

    purge_interval_seconds: float = Field(
        default=60.0,
        description="How often the relay deletes expired sessions"
    )

    # ============================================
    # NEGOTIATION SETTINGS
    # ============================================

    poll_interval_seconds: float = Field(
        default=2.0,
        description="Relay polling interval (fallback for realtime updates)"
    )

    countdown_interval_seconds: float = Field(
        default=1.0,
        description="Tick of the sender expiry countdown"
    )

    settle_delay_seconds: float = Field(
        default=0.1,
        description="Pause after tearing down a previous session before starting a new one"
    )

    ice_servers: list[str] = Field(
        default=[
            "stun:stun.l.google.com:19302",
            "stun:stun1.l.google.com:19302",
        ],
        description="STUN servers used for candidate discovery"
    )

    # ============================================
    # TRANSFER SETTINGS
    # ============================================

    channel_label: str = Field(
        default="medications",
        description="Label of the data channel carrying the payload"
    )

    max_message_bytes: int = Field(
        default=262144,
        description="Largest payload sent as a single data channel message"
    )

    sender_grace_seconds: float = Field(
        default=1.0,
        description="Delay after sending before the sender completes (channel flush)"
    )

    receiver_grace_seconds: float = Field(
        default=0.5,
        description="Delay after receiving before records are handed over"
    )

    # ============================================
    # PATH CONFIGURATION
    # ============================================

    data_dir: Path = Field(
        default_factory=lambda: Path.cwd() / ".medsync_data",
        description="Base data directory (relay database)"
    )

    @field_validator("data_dir", mode="after")
    @classmethod
    def ensure_data_dir_exists(cls, v: Path) -> Path:
        """Ensure data directory exists"""
        v.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("session_ttl_seconds", mode="after")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("session_ttl_seconds must be positive")
        return v

    @property
    def relay_db_path(self) -> Path:
        return self.data_dir / "sync_sessions.db"


@lru_cache()
def get_settings() -> MedSyncSettings:
    """
    Get cached settings instance (singleton pattern)

    Returns:
        MedSyncSettings: Application settings
    """
    return MedSyncSettings()
