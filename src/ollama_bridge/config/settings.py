"""Configuration management for ollama-bridge.

Loads settings from a YAML configuration file with environment variable
overrides for sensitive values (tunnel credentials). Supports .env files.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/ollama-bridge.yaml")
DEFAULT_CREDENTIALS_PATH = Path.home() / ".config" / "ollama-bridge" / "credentials.yaml"

DEFAULT_ALLOWED_DOMAINS = [
    "*.ngrok-free.app",
    "*.ngrok-free.dev",
    "*.ngrok.app",
    "*.ngrok.dev",
    "*.ngrok.io",
]


class UpstreamConfig(BaseModel):
    url: str = Field(default="http://localhost:11434", description="Ollama server URL")
    probe_path: str = Field(default="/api/tags")
    probe_timeout: float = Field(default=10.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    user_agent: str = Field(default="ollama-bridge")


class ServerConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int | None = Field(default=None, ge=1, le=65535)
    default_port: int = Field(default=3535, ge=1, le=65535)
    max_port_attempts: int = Field(default=100, gt=0)
    startup_timeout: float = Field(default=10.0, gt=0)


class TunnelConfig(BaseModel):
    provider: Literal["relay", "managed"] = Field(default="relay")
    open_timeout: float = Field(default=15.0, gt=0)


class RelayConfig(BaseModel):
    host: str = Field(default="https://localtunnel.me")
    subdomain: str | None = Field(default=None)
    max_connections: int = Field(default=10, gt=0)


class ManagedConfig(BaseModel):
    authtoken: SecretStr = Field(default=SecretStr(""))
    domain: str | None = Field(default=None, description="Reserved domain to bind")
    region: str | None = Field(default=None)
    allowed_domains: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_DOMAINS))
    strip_request_headers: list[str] = Field(
        default_factory=lambda: ["ngrok-skip-browser-warning"],
    )
    poll_interval: float = Field(default=5.0, gt=0)


class DisplayConfig(BaseModel):
    qr: bool = Field(default=False, description="Print a QR code with the connection details")


class StoreConfig(BaseModel):
    path: Path = Field(default=DEFAULT_CREDENTIALS_PATH)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for the bridge.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically. Keyword arguments carry the YAML layer
    and rank below the environment and .env sources.
    """

    model_config = {
        "env_prefix": "OLLAMA_BRIDGE_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    tunnel: TunnelConfig = Field(default_factory=TunnelConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    managed: ManagedConfig = Field(default_factory=ManagedConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    Priority: env vars > .env file > YAML file > defaults
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    # Load .env file manually for non-prefixed vars
    _load_dotenv()

    yaml_data = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    else:
        logger.warning("Config file %s not found, using defaults + env vars", path)

    _apply_env_overrides(yaml_data)

    return Settings(**yaml_data)


def _load_dotenv() -> None:
    """Load .env file into os.environ if it exists."""
    env_path = Path(".env")
    if not env_path.exists():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()
                if not os.environ.get(key):
                    os.environ[key] = value


def _apply_env_overrides(yaml_data: dict) -> None:
    """Apply environment variable overrides for non-prefixed vars."""
    ngrok_token = os.environ.get("NGROK_AUTHTOKEN", "")

    if ngrok_token:
        managed = yaml_data.get("managed") or {}
        managed["authtoken"] = ngrok_token
        yaml_data["managed"] = managed
