"""Tests for the command-line entry point."""

import asyncio
import functools
from unittest.mock import AsyncMock, patch

import pytest
from conftest import LoopbackChannel, eventually

from callbridge.config import ConfigError, ConfigManager
from callbridge.main import (
    _init_sip_client_factory,
    _load_config,
    parse_args,
    run_agent,
    run_server,
)
from callbridge.signaling.relay import SignalingRelay
from callbridge.sip import InMemorySIPClient


@pytest.fixture
def trunk_config(tmp_path) -> ConfigManager:
    path = tmp_path / "config.yml"
    path.write_text("trunk:\n  registrar: pbx.example.com\n  realm: example.com\n")
    return ConfigManager(user_config_path=str(path))


class TestParseArgs:
    """Tests for argument parsing."""

    def test_defaults_to_serve(self) -> None:
        """Test no subcommand runs the relay."""
        args = parse_args([])

        assert args.command == "serve"
        assert args.host is None
        assert args.port is None
        assert not args.debug

    def test_serve_options(self) -> None:
        """Test host and port overrides."""
        args = parse_args(
            ["--config", "config.yml", "serve", "--host", "127.0.0.1", "--port", "4000"]
        )

        assert args.config == "config.yml"
        assert args.host == "127.0.0.1"
        assert args.port == 4000

    def test_agent_options(self) -> None:
        """Test agent subcommand options."""
        args = parse_args(
            ["--debug", "agent", "--agent-id", "a1", "--call", "R1", "--auto-answer", "--mock-sip"]
        )

        assert args.command == "agent"
        assert args.debug
        assert args.agent_id == "a1"
        assert args.call == "R1"
        assert args.auto_answer
        assert args.mock_sip
        assert args.relay is None


class TestConfigLoading:
    """Tests for config loading at startup."""

    def test_defaults(self) -> None:
        """Test no path gives the built-in defaults."""
        assert _load_config(None).get("server.port") == 3000

    def test_missing_file_exits(self, tmp_path) -> None:
        """Test a bad config path stops the program."""
        with pytest.raises(SystemExit) as exc_info:
            _load_config(str(tmp_path / "missing.yml"))

        assert exc_info.value.code == 1


class TestSipClientSelection:
    """Tests for choosing the SIP backend."""

    def test_mock_without_registrar(self) -> None:
        """Test the in-memory client is used when no registrar is set."""
        assert _init_sip_client_factory(ConfigManager(), mock_mode=False) is InMemorySIPClient

    def test_mock_mode(self, trunk_config) -> None:
        """Test mock mode wins over a configured registrar."""
        assert _init_sip_client_factory(trunk_config, mock_mode=True) is InMemorySIPClient

    def test_real_client(self, trunk_config) -> None:
        """Test a registrar selects pyVoIP with the configured timeout."""
        pytest.importorskip("pyVoIP")
        # pylint: disable-next=import-outside-toplevel
        from callbridge.sip.pyvoip_client import PyVoIPClient

        factory = _init_sip_client_factory(trunk_config, mock_mode=False)

        assert isinstance(factory, functools.partial)
        assert factory.func is PyVoIPClient
        assert factory.keywords == {"registration_timeout": 10.0}


class TestRunServer:
    """Tests for running the relay server."""

    def test_agents_are_warned_before_sockets_close(self) -> None:
        """Test stopping the server notifies the relay before uvicorn shuts down."""
        servers = []
        order = []

        def fake_run(server, sockets=None):
            servers.append(server)

        notify = AsyncMock(side_effect=lambda: order.append("relay"))
        base_shutdown = AsyncMock(side_effect=lambda sockets=None: order.append("uvicorn"))
        with patch("uvicorn.Server.run", fake_run), patch(
            "uvicorn.Server.shutdown", base_shutdown
        ), patch.object(SignalingRelay, "shutdown", notify):
            run_server(ConfigManager(), "127.0.0.1", 4000)
            [server] = servers
            assert server.config.host == "127.0.0.1"
            assert server.config.port == 4000

            asyncio.run(server.shutdown())

        assert order == ["relay", "uvicorn"]


class TestRunAgent:
    """Tests for the command-line agent."""

    @pytest.mark.asyncio
    async def test_agent_id_required(self) -> None:
        """Test the agent refuses to start without an id."""
        with pytest.raises(ConfigError, match="agent id"):
            await run_agent(ConfigManager(), parse_args(["agent"]))

    @pytest.mark.asyncio
    async def test_agent_places_call_and_logs_out(self, relay: SignalingRelay) -> None:
        """Test the agent joins the requested room and leaves it when stopped."""
        channel = LoopbackChannel(relay)
        args = parse_args(["agent", "--agent-id", "alice", "--call", "R1", "--mock-sip"])

        with patch("callbridge.main.WebSocketSignalingClient", return_value=channel):
            task = asyncio.get_running_loop().create_task(run_agent(ConfigManager(), args))
            await eventually(lambda: relay.health()["rooms"] == 1)

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert relay.health()["rooms"] == 0
        assert channel.closed
        assert relay.registry.get(channel.connection_id) is None
