"""Dependency injection and service wiring."""

import logging
from functools import lru_cache

from .services import (
    CallSessionCoordinator,
    CallStore,
    ConnectionRegistry,
    HttpSignalingChannel,
)
from .services.peer_aiortc import AiortcMediaCapture, make_peer_factory
from .settings import Settings, get_settings, load_ice_servers

logger = logging.getLogger(__name__)


@lru_cache()
def get_call_store() -> CallStore:
    """Get singleton call store instance."""
    return CallStore()


@lru_cache()
def get_connection_registry() -> ConnectionRegistry:
    """Get singleton relay connection registry."""
    return ConnectionRegistry()


def build_coordinator(settings: Settings = None) -> CallSessionCoordinator:
    """Wire a coordinator for a client process.

    Uses the relay at SIGNALING_BASE_URL for signaling, ffmpeg devices for
    capture and aiortc for the peer connection. The caller connects the
    signaling channel and starts the coordinator.

    Args:
        settings: Application settings (loaded from env if omitted)

    Returns:
        Coordinator for USER_ID
    """
    if settings is None:
        settings = get_settings()
    if not settings.user_id:
        raise ValueError("USER_ID must be configured to place or receive calls")

    signaling = HttpSignalingChannel(settings.signaling_base_url, settings.user_id)
    ice_servers = load_ice_servers(settings)
    logger.info(f"Using {len(ice_servers)} ICE server entries")

    return CallSessionCoordinator.from_settings(
        settings,
        signaling=signaling,
        media_capture=AiortcMediaCapture.from_settings(settings),
        peer_factory=make_peer_factory(ice_servers),
    )


# Dependency factories for FastAPI
def get_call_store_dependency() -> CallStore:
    """FastAPI dependency for the call store."""
    return get_call_store()


def get_connection_registry_dependency() -> ConnectionRegistry:
    """FastAPI dependency for the connection registry."""
    return get_connection_registry()
