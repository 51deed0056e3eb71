"""Main entry point for callbridge.

``callbridge serve`` runs the signaling relay. ``callbridge agent`` runs a
command-line agent that logs in, optionally places a call, and answers
incoming calls.
"""

import argparse
import asyncio
import functools
import logging
import sys
from typing import Any, Callable, Dict, List, NoReturn, Optional

from callbridge.call.controller import CallListener, create_controller
from callbridge.call.session import AgentProfile, CallSession, CallState
from callbridge.config import ConfigManager
from callbridge.config.config_manager import VERSION, ConfigError
from callbridge.errors import CallControlError
from callbridge.sip.in_memory_client import InMemorySIPClient
from callbridge.sip.sip_client import SIPClient
from callbridge.transport.signaling_client import WebSocketSignalingClient

logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False, level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        debug: If True, set log level to DEBUG regardless of ``level``
        level: Level name from the configuration
    """
    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed command-line arguments
    """
    parser = argparse.ArgumentParser(
        description="Callbridge - signaling relay and call control for agent calls"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (default: built-in defaults)",
    )
    subparsers = parser.add_subparsers(dest="command")
    parser.set_defaults(command="serve", host=None, port=None)

    serve = subparsers.add_parser("serve", help="Run the signaling relay server")
    serve.add_argument("--host", type=str, help="Bind address (default: server.host)")
    serve.add_argument("--port", type=int, help="Port (default: server.port)")

    agent = subparsers.add_parser("agent", help="Run a command-line agent")
    agent.add_argument("--relay", type=str, help="Relay URL (default: agent.relay_url)")
    agent.add_argument("--agent-id", type=str, help="Agent id (default: agent.agent_id)")
    agent.add_argument("--extension", type=str, help="Extension (default: agent.extension)")
    agent.add_argument("--call", type=str, help="Room id or number to call after login")
    agent.add_argument(
        "--auto-answer",
        action="store_true",
        help="Accept incoming calls automatically",
    )
    agent.add_argument(
        "--mock-sip",
        action="store_true",
        help="Use the in-memory SIP client instead of a real registrar",
    )
    return parser.parse_args(argv)


def _load_config(config_path: Optional[str]) -> ConfigManager:
    """Load and validate configuration.

    Args:
        config_path: Path to configuration file, or None for the defaults

    Returns:
        Initialized ConfigManager

    Raises:
        SystemExit: If configuration is invalid
    """
    try:
        config = ConfigManager(user_config_path=config_path)

        trunk = config.get_trunk_config()
        if trunk.get("registrar"):
            logger.info("Trunk registrar: %s (realm %s)", trunk["registrar"], trunk.get("realm"))
        else:
            logger.info("No trunk registrar configured, peer calls only")

        ice_servers = config.get_ice_servers()
        logger.info("ICE servers: %d", len(ice_servers))

        return config

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)


def _init_sip_client_factory(config: ConfigManager, mock_mode: bool) -> Callable[..., SIPClient]:
    """Choose the SIP client class for the trunk.

    Args:
        config: Configuration manager
        mock_mode: If True, always use the in-memory client

    Returns:
        Factory accepting the SIP client callbacks
    """
    trunk = config.get_trunk_config()
    timing = config.get_timing_config()

    if mock_mode or not trunk.get("registrar"):
        logger.info("  - Using InMemorySIPClient (mock mode)")
        return InMemorySIPClient

    # pylint: disable=import-outside-toplevel
    from callbridge.sip.pyvoip_client import PyVoIPClient

    logger.info("  - Using PyVoIPClient (real VoIP)")
    return functools.partial(
        PyVoIPClient,
        registration_timeout=timing.get("registration_timeout", 10.0),
    )


def run_server(config: ConfigManager, host: Optional[str], port: Optional[int]) -> None:
    """Run the signaling relay until interrupted."""
    # pylint: disable=import-outside-toplevel
    import uvicorn

    from callbridge.web.app import create_app

    bind_host = host or config.get("server.host", "0.0.0.0")
    bind_port = port or config.get("server.port", 3000)
    app = create_app(config)
    relay = app.state.relay

    class RelayServer(uvicorn.Server):
        """Warns connected agents before uvicorn closes their sockets."""

        async def shutdown(self, sockets: Optional[List[Any]] = None) -> None:
            await relay.shutdown()
            await super().shutdown(sockets=sockets)

    server = RelayServer(
        uvicorn.Config(app, host=bind_host, port=bind_port, log_level="warning")
    )
    logger.info("Signaling relay listening on ws://%s:%d/ws", bind_host, bind_port)
    server.run()


class AgentConsole(CallListener):
    """Logs call events and queues incoming calls for the agent loop."""

    def __init__(self) -> None:
        self.incoming: "asyncio.Queue[CallSession]" = asyncio.Queue()

    async def on_state_changed(self, session: CallSession, previous: CallState) -> None:
        logger.info(
            "[%s] %s -> %s%s",
            session.remote_party,
            previous.value,
            session.state.value,
            f" ({session.end_reason})" if session.end_reason else "",
        )

    async def on_session_updated(self, session: CallSession) -> None:
        logger.info(
            "[%s] muted=%s video=%s", session.remote_party, session.muted, session.video_enabled
        )

    async def on_incoming_call(self, session: CallSession) -> None:
        await self.incoming.put(session)

    async def on_remote_notice(
        self, session: CallSession, event: str, data: Dict[str, Any]
    ) -> None:
        logger.info("[%s] remote %s: %s", session.remote_party, event, data)


async def run_agent(config: ConfigManager, args: argparse.Namespace) -> None:
    """Log in, optionally place a call, then serve incoming calls until cancelled."""
    agent_config: Dict[str, Any] = config.get("agent", {})
    agent_id = args.agent_id or agent_config.get("agent_id")
    if not agent_id:
        raise ConfigError("An agent id is required (--agent-id or agent.agent_id)")

    signaling = WebSocketSignalingClient(args.relay or agent_config["relay_url"])
    await signaling.connect()

    console = AgentConsole()
    controller = create_controller(
        config,
        signaling,
        sip_client_factory=_init_sip_client_factory(config, args.mock_sip),
        listener=console,
    )
    profile = AgentProfile(
        agent_id=agent_id,
        extension=args.extension or agent_config.get("extension"),
        trunk_username=agent_config.get("trunk_username"),
        trunk_password=agent_config.get("trunk_password"),
    )

    try:
        await controller.login(profile)
        logger.info("Logged in as %s (trunk: %s)", agent_id, profile.registration.value)
        if args.call:
            await controller.start(args.call)

        while True:
            session = await console.incoming.get()
            logger.info("Incoming call from %s", session.remote_party)
            if args.auto_answer and controller.session is session:
                await controller.accept()
    finally:
        await controller.logout()
        await signaling.close()


def main() -> NoReturn:
    """Main application entry point."""
    args = parse_args()
    setup_logging(args.debug)

    logger.info("=" * 60)
    logger.info("Callbridge v%s", VERSION)
    logger.info("=" * 60)

    config = _load_config(args.config)
    setup_logging(args.debug, config.get("logging.level", "INFO"))

    if args.command == "agent":
        try:
            asyncio.run(run_agent(config, args))
        except KeyboardInterrupt:
            logger.info("Agent stopped")
        except (CallControlError, ConfigError) as e:
            logger.error("Agent failed: %s", e)
            sys.exit(1)
    else:
        try:
            run_server(config, args.host, args.port)
        except KeyboardInterrupt:
            logger.info("Server stopped")

    sys.exit(0)


if __name__ == "__main__":
    main()
