"""
Configuration for the inventory hub and the sync agent.

Configuration can be provided directly, via environment variables,
or from a YAML settings file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

DEFAULT_DB_PATH = Path("data") / "inventory.json"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ[name])
    except (KeyError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ[name])
    except (KeyError, ValueError):
        return default


def _split_list(value: str | list[str] | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class HubConfig:
    """Configuration for the inventory hub.

    Environment Variables:
        INVENTORY_HUB_DB_PATH: Path of the JSON document (default: data/inventory.json)
        INVENTORY_HUB_HOST: Bind address (default: 0.0.0.0)
        INVENTORY_HUB_PORT / PORT: Listen port (default: 8081)
        INVENTORY_HUB_ALLOWED_ORIGINS / ALLOWED_ORIGINS: Comma separated CORS allow-list
        INVENTORY_HUB_REQUIRE_AUTH: Reject mutations from unauthenticated sessions
        INVENTORY_HUB_AUTH_SECRET: HMAC secret for auth tokens and message signatures
        INVENTORY_HUB_ADMIN_USERS: Comma separated users allowed to log in
        INVENTORY_HUB_ADMIN_PASSWORD: Password checked by the login endpoint
        INVENTORY_HUB_ENABLE_RATE_LIMIT: Enable per-session and per-address limits
        INVENTORY_HUB_RATE_LIMIT_PER_MINUTE: Messages per session per minute
        INVENTORY_HUB_MAX_CONNECTIONS: Maximum concurrent WebSocket sessions

    Attributes:
        db_path: Location of the persisted document
        allowed_origins: CORS allow-list; empty means any origin
        require_auth: Whether mutations need a successful auth handshake
        auth_secret: Secret for HMAC tokens; None accepts any non-empty handshake
        token_max_age: Seconds an issued token stays valid
        max_clock_skew: Accepted envelope timestamp deviation in seconds
        heartbeat_interval: Seconds between liveness sweeps
        idle_timeout: Seconds of silence before a session is closed
        store_timeout: Seconds before a pending store operation fails
        broadcast_to_unauthenticated: Deliver broadcasts to sessions that have not authenticated
    """

    db_path: Path = DEFAULT_DB_PATH
    host: str = "0.0.0.0"
    port: int = 8081
    allowed_origins: list[str] = field(default_factory=list)

    # Authentication
    require_auth: bool = False
    auth_secret: str | None = None
    token_max_age: float = 8 * 60 * 60
    admin_users: list[str] = field(default_factory=lambda: ["admin"])
    admin_password: str | None = None

    # Rate limiting
    enable_rate_limit: bool = False
    rate_limit_per_minute: int = 60
    connection_rate_limit: int = 10
    max_connections: int = 100

    # Timing
    max_clock_skew: float = 10.0
    heartbeat_interval: float = 30.0
    idle_timeout: float = 5 * 60
    store_timeout: float = 10.0

    broadcast_to_unauthenticated: bool = False

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.allowed_origins = _split_list(self.allowed_origins)
        self.admin_users = _split_list(self.admin_users)

    @classmethod
    def from_environment(cls) -> HubConfig:
        """Create configuration from environment variables.

        Returns:
            HubConfig populated from environment variables
        """
        origins = os.environ.get("INVENTORY_HUB_ALLOWED_ORIGINS", os.environ.get("ALLOWED_ORIGINS"))
        return cls(
            db_path=Path(os.environ.get("INVENTORY_HUB_DB_PATH", str(DEFAULT_DB_PATH))),
            host=os.environ.get("INVENTORY_HUB_HOST", "0.0.0.0"),
            port=_env_int("INVENTORY_HUB_PORT", _env_int("PORT", 8081)),
            allowed_origins=_split_list(origins),
            require_auth=_env_bool("INVENTORY_HUB_REQUIRE_AUTH"),
            auth_secret=os.environ.get("INVENTORY_HUB_AUTH_SECRET") or None,
            token_max_age=_env_float("INVENTORY_HUB_TOKEN_MAX_AGE", 8 * 60 * 60),
            admin_users=_split_list(os.environ.get("INVENTORY_HUB_ADMIN_USERS", "admin")),
            admin_password=os.environ.get("INVENTORY_HUB_ADMIN_PASSWORD") or None,
            enable_rate_limit=_env_bool("INVENTORY_HUB_ENABLE_RATE_LIMIT"),
            rate_limit_per_minute=_env_int("INVENTORY_HUB_RATE_LIMIT_PER_MINUTE", 60),
            connection_rate_limit=_env_int("INVENTORY_HUB_CONNECTION_RATE_LIMIT", 10),
            max_connections=_env_int("INVENTORY_HUB_MAX_CONNECTIONS", 100),
            max_clock_skew=_env_float("INVENTORY_HUB_MAX_CLOCK_SKEW", 10.0),
            heartbeat_interval=_env_float("INVENTORY_HUB_HEARTBEAT_INTERVAL", 30.0),
            idle_timeout=_env_float("INVENTORY_HUB_IDLE_TIMEOUT", 5 * 60),
            store_timeout=_env_float("INVENTORY_HUB_STORE_TIMEOUT", 10.0),
            broadcast_to_unauthenticated=_env_bool("INVENTORY_HUB_BROADCAST_TO_UNAUTHENTICATED"),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> HubConfig:
        """Create configuration from the ``hub`` section of a YAML file.

        ```yaml
        hub:
          db_path: /var/lib/dealership/inventory.json
          port: 8081
          allowed_origins:
            - https://dealership.example.com
          require_auth: true
          auth_secret: change-me
        ```

        Unknown keys are ignored. A missing file yields the defaults.
        """
        path = Path(path)
        if not path.exists():
            return cls()

        loaded = yaml.safe_load(path.read_text()) or {}
        section: dict[str, Any] = loaded.get("hub", loaded) if isinstance(loaded, dict) else {}
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in section.items() if key in known})

    def to_public_dict(self) -> dict[str, Any]:
        """Settings safe to expose on the stats endpoint (no secrets)."""
        return {
            "allowedOrigins": list(self.allowed_origins),
            "requireAuth": self.require_auth,
            "enableRateLimit": self.enable_rate_limit,
            "rateLimitPerMinute": self.rate_limit_per_minute,
            "maxConnections": self.max_connections,
            "maxClockSkew": self.max_clock_skew,
            "heartbeatInterval": self.heartbeat_interval,
            "idleTimeout": self.idle_timeout,
        }


@dataclass
class AgentConfig:
    """Configuration for the client sync agent.

    Attributes:
        api_base: Base URL of the hub HTTP surface (e.g. http://localhost:8081)
        ws_url: WebSocket URL; derived from api_base when not set
        seed_path: Static JSON snapshot used when the hub cannot be read
        seed_url: Static JSON snapshot served over HTTP, tried before seed_path
        user_id: User presented in the auth handshake
        auth_token: Token presented in the auth handshake and used to sign messages
        max_reconnect_attempts: Reconnect attempts before giving up
        reconnect_delay: Base delay in seconds, doubled on each attempt
        heartbeat_interval: Seconds between ping messages
        request_timeout: Seconds before an HTTP request or pending mutation fails
        initial_load_retries: Extra attempts at the hub read endpoint on startup
    """

    api_base: str
    ws_url: str | None = None
    seed_path: Path | None = None
    seed_url: str | None = None
    user_id: str | None = None
    auth_token: str | None = None
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 1.0
    heartbeat_interval: float = 30.0
    request_timeout: float = 10.0
    initial_load_retries: int = 3

    def __post_init__(self) -> None:
        self.api_base = self.api_base.rstrip("/")
        if self.ws_url is None:
            base = self.api_base
            if base.startswith("https:"):
                base = "wss:" + base[len("https:"):]
            elif base.startswith("http:"):
                base = "ws:" + base[len("http:"):]
            self.ws_url = f"{base}/ws"
        if self.seed_path is not None:
            self.seed_path = Path(self.seed_path)
