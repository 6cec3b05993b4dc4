"""Application settings management using Pydantic."""

import logging
import os
from typing import Annotated, Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        populate_by_name=True,
    )

    # Identity
    user_id: Optional[str] = Field(
        default=None,
        alias="USER_ID",
        description="Identity of the local user placing and receiving calls"
    )

    # Signaling relay
    signaling_base_url: str = Field(
        default="http://localhost:8080",
        alias="SIGNALING_BASE_URL",
        description="Base URL of the signaling relay"
    )

    relay_host: str = Field(
        default="0.0.0.0",
        alias="RELAY_HOST",
        description="Interface the relay server binds to"
    )

    relay_port: int = Field(
        default=8080,
        alias="RELAY_PORT",
        description="Port the relay server listens on"
    )

    log_level: str = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Log level for the studypals_calls loggers"
    )

    # Call timings
    ended_grace_s: float = Field(
        default=0.5,
        alias="ENDED_GRACE_S",
        description="Seconds the 'ended' state is held before returning to idle"
    )

    ring_timeout_s: Optional[float] = Field(
        default=45.0,
        alias="RING_TIMEOUT_S",
        description="Seconds an unanswered call rings before it is ended (empty disables)"
    )

    connection_timeout_s: Optional[float] = Field(
        default=30.0,
        alias="CONNECTION_TIMEOUT_S",
        description="Seconds a call may stay connecting before it fails (empty disables)"
    )

    # ICE servers
    stun_urls: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: [
            "stun:stun.l.google.com:19302",
            "stun:stun1.l.google.com:19302",
            "stun:stun2.l.google.com:19302",
        ],
        alias="STUN_URLS",
        description="STUN server URLs (comma-separated in env)"
    )

    ice_config_path: Optional[str] = Field(
        default=None,
        alias="ICE_CONFIG_PATH",
        description="Path to YAML file listing additional STUN/TURN servers"
    )

    # Media capture
    video_width: int = Field(default=640, alias="VIDEO_WIDTH", description="Capture width in pixels")
    video_height: int = Field(default=480, alias="VIDEO_HEIGHT", description="Capture height in pixels")
    video_fps: int = Field(default=30, alias="VIDEO_FPS", description="Capture frame rate")

    camera_devices: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        alias="CAMERA_DEVICES",
        description="Camera devices in switch order, front first (comma-separated in env)"
    )

    camera_format: Optional[str] = Field(default=None, alias="CAMERA_FORMAT")
    audio_device: Optional[str] = Field(default=None, alias="AUDIO_DEVICE")
    audio_format: Optional[str] = Field(default=None, alias="AUDIO_FORMAT")
    screen_device: Optional[str] = Field(default=None, alias="SCREEN_DEVICE")
    screen_format: Optional[str] = Field(default=None, alias="SCREEN_FORMAT")

    @field_validator("signaling_base_url")
    @classmethod
    def validate_signaling_base_url(cls, v: str) -> str:
        """Validate signaling base URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("SIGNALING_BASE_URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("LOG_LEVEL must be DEBUG, INFO, WARNING, ERROR or CRITICAL")
        return level

    @field_validator("ended_grace_s")
    @classmethod
    def validate_ended_grace(cls, v: float) -> float:
        if v < 0:
            raise ValueError("ENDED_GRACE_S must not be negative")
        return v

    @field_validator("ring_timeout_s", "connection_timeout_s", mode="before")
    @classmethod
    def validate_timeout(cls, v):
        """Empty string disables a timeout; otherwise it must be positive."""
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        if float(v) <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("stun_urls", "camera_devices", mode="before")
    @classmethod
    def validate_comma_list(cls, v) -> List[str]:
        """Parse comma-separated lists."""
        if isinstance(v, str):
            return parse_comma_separated_list(v)
        elif isinstance(v, list):
            return v
        return []

    @field_validator("ice_config_path", mode="before")
    @classmethod
    def validate_ice_config_path(cls, v: Optional[str]) -> Optional[str]:
        """Drop the ICE config path if the file does not exist."""
        if v and v.strip():
            path = v.strip()
            if not os.path.isfile(path):
                logger.warning(f"ICE_CONFIG_PATH '{path}' does not exist - using STUN servers only")
                return None
            return path
        return None


def get_settings() -> Settings:
    """Get application settings instance."""
    return Settings()


def parse_comma_separated_list(value: str) -> List[str]:
    """Parse comma-separated string into list of strings."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def load_ice_servers(settings: Settings) -> List[Dict[str, Any]]:
    """Build the ICE server list from STUN_URLS plus the optional YAML file.

    The YAML file holds an ``ice_servers`` list whose entries have ``urls``
    (string or list) and optional ``username``/``credential``.
    """
    servers: List[Dict[str, Any]] = []
    if settings.stun_urls:
        servers.append({"urls": list(settings.stun_urls)})

    if settings.ice_config_path:
        with open(settings.ice_config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
        for entry in config.get("ice_servers") or []:
            if not isinstance(entry, dict) or not entry.get("urls"):
                logger.warning(f"Skipping invalid ICE server entry: {entry!r}")
                continue
            server: Dict[str, Any] = {"urls": entry["urls"]}
            if entry.get("username"):
                server["username"] = entry["username"]
            if entry.get("credential"):
                server["credential"] = entry["credential"]
            servers.append(server)

    return servers
