"""
Configuration management for chatkeep state directories.

The configuration is stored as a TOML file in the state directory. It
specifies the HTTP bind address, the billing collaborator and the reply
generation model. A few values can be overridden from the environment,
which is how the façade processes are normally pointed at a directory.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import tomli_w


CONFIG_FILENAME = "chatkeep.toml"
STATE_DB_FILENAME = "state.db"
CONFIG_VERSION = 1

DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 3847
DEFAULT_VERIFY_TIMEOUT = 10.0
DEFAULT_EXTENSION_ID = "buzzchat"
DEFAULT_GENERATION_MODEL = "claude-3-haiku-20240307"

ENV_STATE_DIR = "CHATKEEP_STATE_DIR"
ENV_API_KEY = "CHATKEEP_API_KEY"
ENV_HTTP_HOST = "CHATKEEP_HTTP_HOST"
ENV_HTTP_PORT = "CHATKEEP_HTTP_PORT"
ENV_BILLING_URL = "CHATKEEP_BILLING_URL"


def get_default_state_dir() -> Path:
    """State directory from CHATKEEP_STATE_DIR, else ~/.chatkeep."""
    env_dir = os.environ.get(ENV_STATE_DIR)
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".chatkeep"


def get_env_api_key() -> Optional[str]:
    """Capability credential a façade client presents on behalf of its caller."""
    return os.environ.get(ENV_API_KEY) or None


@dataclass
class HttpConfig:
    """Bind address for the HTTP control API. Loopback only by default."""
    host: str = DEFAULT_HTTP_HOST
    port: int = DEFAULT_HTTP_PORT


@dataclass
class BillingConfig:
    """Remote billing collaborator. An empty url means the local user record."""
    url: str = ""
    extension_id: str = DEFAULT_EXTENSION_ID
    verify_timeout: float = DEFAULT_VERIFY_TIMEOUT


@dataclass
class GenerationConfig:
    model: str = DEFAULT_GENERATION_MODEL
    max_tokens: int = 150


@dataclass
class StoreConfig:
    """Complete state directory configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    http: HttpConfig = field(default_factory=HttpConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        """Path to the SQLite key-value store."""
        return self.path / STATE_DB_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _apply_env_overrides(config: StoreConfig) -> StoreConfig:
    """Environment beats the file for the values façade processes need."""
    host = os.environ.get(ENV_HTTP_HOST)
    if host:
        config.http.host = host
    port = os.environ.get(ENV_HTTP_PORT)
    if port:
        try:
            config.http.port = int(port)
        except ValueError:
            raise ValueError(f"{ENV_HTTP_PORT} must be an integer (got {port!r})")
    billing_url = os.environ.get(ENV_BILLING_URL)
    if billing_url is not None:
        config.billing.url = billing_url
    return config


def load_config(state_dir: Path) -> StoreConfig:
    """
    Load configuration from a state directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = state_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    http = data.get("http", {})
    billing = data.get("billing", {})
    generation = data.get("generation", {})

    config = StoreConfig(
        path=state_dir,
        version=version,
        created=data.get("store", {}).get("created", ""),
        http=HttpConfig(
            host=str(http.get("host", DEFAULT_HTTP_HOST)),
            port=int(http.get("port", DEFAULT_HTTP_PORT)),
        ),
        billing=BillingConfig(
            url=str(billing.get("url", "")),
            extension_id=str(billing.get("extension_id", DEFAULT_EXTENSION_ID)),
            verify_timeout=float(billing.get("verify_timeout", DEFAULT_VERIFY_TIMEOUT)),
        ),
        generation=GenerationConfig(
            model=str(generation.get("model", DEFAULT_GENERATION_MODEL)),
            max_tokens=int(generation.get("max_tokens", 150)),
        ),
    )
    return _apply_env_overrides(config)


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the state directory.

    Creates the directory if it doesn't exist. Environment overrides are
    saved as-is, so call this on configs you built, not ones you loaded
    under overrides you don't want persisted.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "http": {
            "host": config.http.host,
            "port": config.http.port,
        },
        "billing": {
            "url": config.billing.url,
            "extension_id": config.billing.extension_id,
            "verify_timeout": config.billing.verify_timeout,
        },
        "generation": {
            "model": config.generation.model,
            "max_tokens": config.generation.max_tokens,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(state_dir: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = state_dir / CONFIG_FILENAME

    if config_path.exists():
        return load_config(state_dir)
    config = StoreConfig(path=state_dir)
    save_config(config)
    return _apply_env_overrides(config)
