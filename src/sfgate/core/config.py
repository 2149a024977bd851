"""Configuration management for sfgate"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from dotenv import load_dotenv
from loguru import logger

from sfgate.shared.exceptions import ConfigurationError

if TYPE_CHECKING:
    from sfgate.infrastructure.salesforce.session import Credentials

DEFAULT_LOGIN_URL = "https://login.salesforce.com"
DEFAULT_API_VERSION = "27.0"
SUPPORTED_FORMATS = ("json", "xml")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a number, got {value!r}"
        ) from e


@dataclass
class Config:
    """Configuration for the Salesforce access layer loaded from environment variables"""

    # Fields without defaults (required parameters)
    client_id: str
    client_secret: str
    username: str
    password: str

    # Fields with defaults (optional parameters with sensible defaults)
    login_url: str = DEFAULT_LOGIN_URL
    api_version: str = DEFAULT_API_VERSION
    format: str = "json"

    # Timeouts in seconds
    http_timeout: float = 60.0
    handshake_timeout: float = 110.0
    channel_timeout: float = 40.0

    # Allow PushTopic query/notification updates when they differ
    update_topic: bool = False

    def __repr__(self) -> str:
        return (
            f"Config(login_url={self.login_url!r}, username={self.username!r}, "
            f"api_version={self.api_version!r}, format={self.format!r})"
        )

    def credentials(self) -> "Credentials":
        """Build OAuth credentials for SessionManager

        Returns:
            Credentials instance
        """
        from sfgate.infrastructure.salesforce.session import Credentials

        return Credentials(
            login_url=self.login_url,
            client_id=self.client_id,
            client_secret=self.client_secret,
            username=self.username,
            password=self.password,
        )

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "Config":
        """Load configuration from environment variables

        Values from a .env file are loaded first without overriding
        variables already present in the environment.

        Args:
            env_file: Optional path to a .env file (defaults to ./.env)

        Returns:
            Config instance with values from environment

        Raises:
            ConfigurationError: If required environment variables are missing or invalid
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)

        required = {
            "SALESFORCE_CLIENT_ID": os.getenv("SALESFORCE_CLIENT_ID"),
            "SALESFORCE_CLIENT_SECRET": os.getenv("SALESFORCE_CLIENT_SECRET"),
            "SALESFORCE_USERNAME": os.getenv("SALESFORCE_USERNAME"),
            "SALESFORCE_PASSWORD": os.getenv("SALESFORCE_PASSWORD"),
        }
        missing = [k for k, v in required.items() if not v]
        if missing:
            raise ConfigurationError(
                f"Missing Salesforce configuration: {missing}"
            )

        payload_format = os.getenv("SALESFORCE_FORMAT", "json").lower()
        if payload_format not in SUPPORTED_FORMATS:
            raise ConfigurationError(
                f"SALESFORCE_FORMAT must be one of {SUPPORTED_FORMATS}, "
                f"got {payload_format!r}"
            )

        config = cls(
            client_id=required["SALESFORCE_CLIENT_ID"],
            client_secret=required["SALESFORCE_CLIENT_SECRET"],
            username=required["SALESFORCE_USERNAME"],
            password=required["SALESFORCE_PASSWORD"],
            login_url=os.getenv("SALESFORCE_LOGIN_URL", DEFAULT_LOGIN_URL),
            api_version=os.getenv(
                "SALESFORCE_API_VERSION", DEFAULT_API_VERSION
            ),
            format=payload_format,
            http_timeout=_env_float("SALESFORCE_HTTP_TIMEOUT", 60.0),
            handshake_timeout=_env_float(
                "SALESFORCE_HANDSHAKE_TIMEOUT", 110.0
            ),
            channel_timeout=_env_float("SALESFORCE_CHANNEL_TIMEOUT", 40.0),
            update_topic=_env_bool("SALESFORCE_UPDATE_TOPIC", False),
        )

        logger.info("Configuration loaded:")
        logger.info(f"  Login URL: {config.login_url}")
        logger.info(f"  Username: {config.username}")
        logger.info("  Client Secret: Configured")
        logger.info(f"  API Version: {config.api_version}")
        logger.info(f"  Payload Format: {config.format}")
        logger.info(f"  HTTP Timeout: {config.http_timeout}s")
        logger.info(f"  Handshake Timeout: {config.handshake_timeout}s")
        logger.info(f"  Channel Timeout: {config.channel_timeout}s")
        logger.info(f"  Update Topic: {config.update_topic}")

        return config
