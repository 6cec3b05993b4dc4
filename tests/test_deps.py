"""Tests for dependency wiring."""

import pytest

from studypals_calls.deps import build_coordinator, get_call_store, get_connection_registry
from studypals_calls.services.peer_aiortc import AiortcMediaCapture
from studypals_calls.services.signaling_http import HttpSignalingChannel
from studypals_calls.settings import Settings


class TestDeps:
    """Test cases for service wiring."""

    def test_singletons(self):
        """Test store and registry are shared."""
        assert get_call_store() is get_call_store()
        assert get_connection_registry() is get_connection_registry()

    @pytest.mark.asyncio
    async def test_build_coordinator(self):
        """Test the coordinator is wired to the relay and aiortc capture."""
        settings = Settings(
            _env_file=None,
            USER_ID="alice",
            SIGNALING_BASE_URL="http://relay:8080",
            RING_TIMEOUT_S=20,
        )

        coordinator = build_coordinator(settings)

        assert coordinator.user_id == "alice"
        assert isinstance(coordinator.signaling, HttpSignalingChannel)
        assert coordinator.signaling.ws_url == "ws://relay:8080/ws/alice"
        assert isinstance(coordinator.media_capture, AiortcMediaCapture)
        assert coordinator._ring_timeout_s == 20

    def test_build_coordinator_requires_user(self, monkeypatch):
        """Test a user identity is required."""
        monkeypatch.delenv("USER_ID", raising=False)
        with pytest.raises(ValueError):
            build_coordinator(Settings(_env_file=None))
