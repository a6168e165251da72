"""Configuration management for Tech Roadmap."""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import tomli_w

from tech_roadmap.exceptions import ConfigurationError

SECRET_ENV_KEY = "ROADMAP_SECRET_KEY"
CONFIG_ENV_KEY = "TECH_ROADMAP_CONFIG"
DATABASE_ENV_KEY = "DATABASE_URL"


@dataclass
class Config:
    """Configuration for storage, credential encryption and sync behaviour."""

    database_url: str = ""
    secret_key: str | None = None
    http_timeout_seconds: float = 15.0
    max_stale_minutes: int | None = None
    max_workers: int = 4

    def validate(self) -> list[str]:
        """Validate configuration values. Returns list of error messages."""
        errors: list[str] = []

        if self.database_url:
            parsed = urlparse(self.database_url)
            if not parsed.scheme:
                errors.append("Database URL must include a scheme, e.g. sqlite:///roadmap.db")

        if self.http_timeout_seconds <= 0:
            errors.append("HTTP timeout must be positive")

        if self.max_stale_minutes is not None and self.max_stale_minutes <= 0:
            errors.append("Maximum staleness must be positive when set")

        if self.max_workers < 1:
            errors.append("At least one sync worker is required")

        return errors


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    return Path.home() / ".tech-roadmap"


def get_config_path() -> Path:
    """Get the configuration file path."""
    override = os.environ.get(CONFIG_ENV_KEY)
    if override:
        return Path(override)
    return get_config_dir() / "config.toml"


def default_database_url() -> str:
    return f"sqlite:///{get_config_dir() / 'roadmap.db'}"


def config_exists() -> bool:
    """Check if configuration file exists."""
    return get_config_path().exists()


def load_config() -> Config:
    """Load configuration from TOML file, falling back to defaults.

    Raises:
        ValueError: If config is invalid
    """
    config_path = get_config_path()

    data: dict = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)

    database_section = data.get("database", {})
    security_section = data.get("security", {})
    sync_section = data.get("sync", {})

    config = Config(
        database_url=os.environ.get(DATABASE_ENV_KEY) or database_section.get("url") or default_database_url(),
        secret_key=security_section.get("secret_key"),
        http_timeout_seconds=float(sync_section.get("http_timeout_seconds", 15.0)),
        max_stale_minutes=sync_section.get("max_stale_minutes"),
        max_workers=int(sync_section.get("max_workers", 4)),
    )

    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid configuration: {'; '.join(errors)}")

    return config


def save_config(config: Config) -> None:
    """Save configuration to TOML file."""
    config_path = get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data: dict = {
        "database": {"url": config.database_url},
        "sync": {
            "http_timeout_seconds": config.http_timeout_seconds,
            "max_workers": config.max_workers,
        },
    }

    if config.max_stale_minutes is not None:
        data["sync"]["max_stale_minutes"] = config.max_stale_minutes

    if config.secret_key:
        data["security"] = {"secret_key": config.secret_key}

    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)


def get_master_secret(config: Config | None = None) -> str:
    """Return the process-wide secret used to derive the credential key.

    The environment variable wins over the config file. Absence is only an
    error when a secret actually needs to be encrypted or decrypted.

    Raises:
        ConfigurationError: If no secret is configured
    """
    value = os.environ.get(SECRET_ENV_KEY)
    if value:
        return value
    if config is None and config_exists():
        try:
            config = load_config()
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
    if config is not None and config.secret_key:
        return config.secret_key
    raise ConfigurationError(
        f"{SECRET_ENV_KEY} is required to store datasource secrets. "
        "Set the environment variable or [security] secret_key in the config file."
    )
