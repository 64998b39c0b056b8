"""Tests for the ngrok-backed managed tunnel."""

from __future__ import annotations

import asyncio
from typing import Iterator
from unittest.mock import MagicMock, patch

import pytest
from pyngrok.exception import PyngrokError

from ollama_bridge.domain.errors import MissingCredentialError, ProviderRejectedError
from ollama_bridge.domain.models import TunnelEventKind
from ollama_bridge.tunnel.managed import ManagedTunnelManager, domain_allowed

PUBLIC_URL = "https://quiet-fox.ngrok-free.app"


@pytest.fixture
def mock_ngrok() -> Iterator[MagicMock]:
    with patch("ollama_bridge.tunnel.managed.ngrok") as ngrok:
        ngrok.connect.return_value = MagicMock(public_url=PUBLIC_URL)
        ngrok.get_tunnels.return_value = [MagicMock(public_url=PUBLIC_URL)]
        yield ngrok


@pytest.fixture
def mock_process() -> Iterator[MagicMock]:
    with patch("ollama_bridge.tunnel.managed.process") as process:
        process.is_process_running.return_value = True
        yield process


def _manager(**kwargs) -> ManagedTunnelManager:
    kwargs.setdefault("authtoken", "2abcToken")
    kwargs.setdefault("poll_interval", 60.0)
    return ManagedTunnelManager(**kwargs)


class TestDomainAllowed:
    def test_default_patterns(self) -> None:
        """Only hosts under the allowed suffixes should match."""
        patterns = ["*.ngrok-free.app", "*.ngrok.io"]
        assert domain_allowed("abc.ngrok-free.app", patterns)
        assert domain_allowed("ABC.NGROK.IO", patterns)
        assert not domain_allowed("ngrok-free.app.evil.com", patterns)
        assert not domain_allowed("example.com", patterns)


class TestManagedTunnelManager:
    @pytest.mark.asyncio
    async def test_missing_credential(self, mock_ngrok: MagicMock) -> None:
        """Opening without a token asks for one and never calls ngrok."""
        manager = _manager(authtoken=None)
        with pytest.raises(MissingCredentialError, match="ollama-bridge credential set"):
            await manager.open(3535)
        mock_ngrok.connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_open(self, mock_ngrok: MagicMock, mock_process: MagicMock) -> None:
        """connect should get the local address, HTTPS only and header removal."""
        tunnel = await _manager().open(3535)
        try:
            assert tunnel.public_url == PUBLIC_URL
            kwargs = mock_ngrok.connect.call_args.kwargs
            assert kwargs["addr"] == "127.0.0.1:3535"
            assert kwargs["proto"] == "http"
            assert kwargs["schemes"] == ["https"]
            assert kwargs["request_header"] == {"remove": ["ngrok-skip-browser-warning"]}
            assert "domain" not in kwargs
            assert kwargs["pyngrok_config"].auth_token == "2abcToken"
        finally:
            await tunnel.close()

    @pytest.mark.asyncio
    async def test_reserved_domain(self, mock_ngrok: MagicMock, mock_process: MagicMock) -> None:
        """A reserved domain should be requested from ngrok."""
        mock_ngrok.connect.return_value = MagicMock(public_url="https://mine.ngrok.app")
        tunnel = await _manager(domain="mine.ngrok.app").open(3535)
        try:
            assert mock_ngrok.connect.call_args.kwargs["domain"] == "mine.ngrok.app"
        finally:
            await tunnel.close()

    @pytest.mark.asyncio
    async def test_requested_domain_outside_allow_list(self, mock_ngrok: MagicMock) -> None:
        """A requested domain outside the allow-list is refused up front."""
        with pytest.raises(ProviderRejectedError, match="not in the allowed"):
            await _manager(domain="bridge.example.com").open(3535)
        mock_ngrok.connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_custom_allow_list(self, mock_ngrok: MagicMock, mock_process: MagicMock) -> None:
        """A custom allow-list should admit its own domains."""
        mock_ngrok.connect.return_value = MagicMock(public_url="https://bridge.example.com")
        manager = _manager(domain="bridge.example.com", allowed_domains=["*.example.com"])
        tunnel = await manager.open(3535)
        await tunnel.close()

    @pytest.mark.asyncio
    async def test_assigned_domain_outside_allow_list(self, mock_ngrok: MagicMock) -> None:
        """An unexpected assigned domain is torn down and refused."""
        mock_ngrok.connect.return_value = MagicMock(public_url="https://surprise.example.net")
        with pytest.raises(ProviderRejectedError, match="surprise.example.net"):
            await _manager().open(3535)
        assert mock_ngrok.disconnect.call_args.args[0] == "https://surprise.example.net"
        mock_ngrok.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_provider_error(self, mock_ngrok: MagicMock) -> None:
        """ngrok errors surface as provider rejections."""
        mock_ngrok.connect.side_effect = PyngrokError("authentication failed")
        with pytest.raises(ProviderRejectedError, match="authentication failed"):
            await _manager().open(3535)

    @pytest.mark.asyncio
    async def test_close_disconnects_and_kills(
        self, mock_ngrok: MagicMock, mock_process: MagicMock
    ) -> None:
        """close should disconnect once and stop the agent."""
        tunnel = await _manager().open(3535)
        await tunnel.close()
        await tunnel.close()
        mock_ngrok.disconnect.assert_called_once()
        assert mock_ngrok.disconnect.call_args.args[0] == PUBLIC_URL
        mock_ngrok.kill.assert_called_once()


class TestManagedTunnelMonitor:
    @pytest.mark.asyncio
    async def test_agent_exit_is_error(
        self, mock_ngrok: MagicMock, mock_process: MagicMock
    ) -> None:
        """The agent process dying is reported as ERROR."""
        mock_process.is_process_running.return_value = False
        tunnel = await _manager(poll_interval=0.01).open(3535)
        try:
            event = await asyncio.wait_for(tunnel.events.get(), timeout=2)
            assert event.kind is TunnelEventKind.ERROR
        finally:
            await tunnel.close()

    @pytest.mark.asyncio
    async def test_tunnel_gone_is_closed(
        self, mock_ngrok: MagicMock, mock_process: MagicMock
    ) -> None:
        """Our tunnel disappearing is reported as CLOSED."""
        mock_ngrok.get_tunnels.return_value = []
        tunnel = await _manager(poll_interval=0.01).open(3535)
        try:
            event = await asyncio.wait_for(tunnel.events.get(), timeout=2)
            assert event.kind is TunnelEventKind.CLOSED
        finally:
            await tunnel.close()

    @pytest.mark.asyncio
    async def test_healthy_agent_stays_quiet(
        self, mock_ngrok: MagicMock, mock_process: MagicMock
    ) -> None:
        """A healthy agent produces no events."""
        tunnel = await _manager(poll_interval=0.01).open(3535)
        try:
            await asyncio.sleep(0.1)
            assert tunnel.events.empty()
        finally:
            await tunnel.close()
