"""Configuration manager for loading and validating config files."""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")


logger = logging.getLogger(__name__)

DEFAULT_STUN_SERVER = "stun:stun.l.google.com:19302"
VERSION = "1.0.0"

MASK = "***MASKED***"


class ConfigError(Exception):
    """Raised when configuration is invalid."""


class ConfigManager:
    """Manages loading and accessing configuration from YAML files.

    The relay server and the agent client both read from the same file:
    ``server`` and ``ice`` drive the relay and ``/api/config``, ``trunk``
    describes the SIP registrar, ``timing`` holds client-side timeouts and
    ``agent`` holds the identity used by the command-line agent.
    """

    def __init__(self, user_config_path: Optional[str] = None) -> None:
        """Initialize the configuration manager.

        Args:
            user_config_path: Path to user config file. When omitted, the
                built-in defaults are used (useful for tests and local runs).

        Raises:
            ConfigError: If config file doesn't exist or is invalid
        """
        self._config: Dict[str, Any] = {}
        self._user_config_path = user_config_path
        self._load_config()

    @staticmethod
    def _defaults() -> Dict[str, Any]:
        return {
            "server": {
                "host": "0.0.0.0",
                "port": 3000,
                "environment": "development",
                "allowed_origins": ["http://localhost:3000"],
            },
            "ice": {
                "stun_server": DEFAULT_STUN_SERVER,
                "turn_server": None,
                "turn_username": None,
                "turn_credential": None,
            },
            "trunk": {
                "websocket_server": None,
                "registrar": None,
                "realm": None,
                "port": 5060,
            },
            "timing": {
                "registration_timeout": 10.0,
                "join_timeout": 10.0,
                "call_attempt_timeout": 60.0,
            },
            "agent": {
                "relay_url": "ws://localhost:3000/ws",
                "agent_id": None,
                "extension": None,
                "trunk_username": None,
                "trunk_password": None,
            },
            "logging": {"level": "INFO"},
        }

    def _load_yaml_file(self, path: Path) -> Dict[str, Any]:
        """Load a YAML file and return its contents.

        Args:
            path: Path to YAML file

        Returns:
            Dictionary containing the YAML contents

        Raises:
            ConfigError: If file cannot be read or parsed
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = yaml.safe_load(f)
                if content is None:
                    return {}
                if not isinstance(content, dict):
                    raise ConfigError(f"Config file {path} must contain a mapping")
                return content
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML file {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to load config file {path}: {e}") from e

    @staticmethod
    def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge ``override`` into ``base`` (returns a new dict)."""
        merged = copy.deepcopy(base)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = ConfigManager._merge(merged[key], value)
            else:
                merged[key] = value
        return merged

    def _validate_config(self) -> None:  # pylint: disable=too-many-branches
        """Validate the loaded configuration.

        Raises:
            ConfigError: If configuration is invalid
        """
        for section in ("server", "ice", "trunk", "timing", "logging"):
            if not isinstance(self._config.get(section), dict):
                raise ConfigError(f"'{section}' section must be a dictionary")

        server = self._config["server"]
        port = server.get("port")
        if not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536:
            raise ConfigError("'server.port' must be an integer between 1 and 65535")
        origins = server.get("allowed_origins", [])
        if isinstance(origins, str):
            # "a, b" style value taken straight from an environment file
            server["allowed_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
        elif not isinstance(origins, list):
            raise ConfigError("'server.allowed_origins' must be a list")

        ice = self._config["ice"]
        if not ice.get("stun_server"):
            raise ConfigError("'ice.stun_server' is required")
        if ice.get("turn_server") and not ice.get("turn_username"):
            raise ConfigError("'ice.turn_username' is required when a TURN server is set")

        trunk = self._config["trunk"]
        trunk_port = trunk.get("port", 5060)
        if not isinstance(trunk_port, int) or isinstance(trunk_port, bool) or trunk_port <= 0:
            raise ConfigError("'trunk.port' must be a positive integer")

        timing = self._config["timing"]
        for timing_name, value in timing.items():
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise ConfigError(f"Timing '{timing_name}' must be a number")
            if value <= 0:
                raise ConfigError(f"Timing '{timing_name}' must be positive")

        level = str(self._config["logging"].get("level", "INFO")).upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ConfigError(f"Invalid logging level: {level}")

    def _load_config(self) -> None:
        """Load configuration from the user config file on top of the defaults.

        Raises:
            ConfigError: If config file doesn't exist or is invalid
        """
        if self._user_config_path is None:
            self._config = self._defaults()
            self._validate_config()
            return

        config_path = Path(self._user_config_path)

        # Check if file exists first
        if not config_path.exists():
            raise ConfigError(
                f"Configuration file not found: {config_path}\n"
                f"Please create a config file. See config.yml.example for reference."
            )

        logger.info("Loading configuration from: %s", config_path)
        self._config = self._merge(self._defaults(), self._load_yaml_file(config_path))

        self._validate_config()
        logger.info("Configuration loaded and validated successfully")

    def get(self, key: str, default: Optional[T] = None) -> Union[Any, T]:
        """Get a configuration value by key.

        Supports dot notation for nested values (e.g., 'trunk.realm')

        Args:
            key: Configuration key (supports dot notation)
            default: Default value if key not found

        Returns:
            Configuration value or default (type matches default when provided)
        """
        keys = key.split(".")
        value: Any = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default  # type: ignore[return-value]

        return value

    def get_ice_servers(self) -> List[Dict[str, Any]]:
        """Get the ICE server list in RTCPeerConnection format.

        Returns:
            List of ICE server entries (STUN first, then TURN if configured)
        """
        ice = self.get("ice", {})
        servers: List[Dict[str, Any]] = [{"urls": ice["stun_server"]}]
        if ice.get("turn_server"):
            servers.append(
                {
                    "urls": ice["turn_server"],
                    "username": ice.get("turn_username"),
                    "credential": ice.get("turn_credential"),
                }
            )
        return servers

    def get_trunk_config(self) -> Dict[str, Any]:
        """Get SIP trunk configuration.

        Returns:
            Trunk configuration dictionary
        """
        return self.get("trunk", {})

    def get_timing_config(self) -> Dict[str, Any]:
        """Get timing configuration.

        Returns:
            Timing configuration dictionary
        """
        return self.get("timing", {})

    def is_origin_allowed(self, origin: Optional[str]) -> bool:
        """Check whether a browser origin may open a signaling connection.

        Requests without an origin (native clients, tools) are allowed.
        """
        if not origin:
            return True
        allowed: List[str] = self.get("server.allowed_origins", [])
        return "*" in allowed or origin in allowed

    def client_config(self) -> Dict[str, Any]:
        """Build the read-only descriptor served at ``/api/config``.

        Returns:
            Dictionary with ICE servers and trunk registrar details
        """
        ice = self.get("ice", {})
        trunk = self.get_trunk_config()
        return {
            "stunServer": ice.get("stun_server"),
            "turnServer": ice.get("turn_server"),
            "turnUsername": ice.get("turn_username"),
            "turnCredential": ice.get("turn_credential"),
            "iceServers": self.get_ice_servers(),
            "trunkWebSocketServer": trunk.get("websocket_server"),
            "trunkRegistrar": trunk.get("registrar"),
            "trunkRealm": trunk.get("realm"),
            "environment": self.get("server.environment", "development"),
            "version": VERSION,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Get the entire configuration as a dictionary.

        Returns:
            Complete configuration dictionary
        """
        return copy.deepcopy(self._config)

    def update_config(self, updates: Dict[str, Any]) -> None:
        """Update configuration values with validation.

        Args:
            updates: Dictionary of config updates (dot notation keys)

        Raises:
            ConfigError: If updates would make config invalid
        """
        previous = copy.deepcopy(self._config)
        for key, value in updates.items():
            keys = key.split(".")
            d = self._config
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value

        try:
            self._validate_config()
        except ConfigError:
            self._config = previous
            raise

    def to_dict_safe(self) -> Dict[str, Any]:
        """Export config with sensitive data masked.

        Returns:
            Config dict with credentials masked
        """
        config = copy.deepcopy(self._config)
        if config.get("ice", {}).get("turn_credential"):
            config["ice"]["turn_credential"] = MASK
        if config.get("agent", {}).get("trunk_password"):
            config["agent"]["trunk_password"] = MASK
        return config
