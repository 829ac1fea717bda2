"""
Configuration module for the Packet device controller.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "packet_launcher"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "packet_launcher"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Controller reconciliation loop configuration."""

    poll_interval: int = 5  # seconds between scans for due devices
    max_concurrent_reconciles: int = 5
    reconcile_timeout: int = 120  # deadline for a single pass

    # Requeue intervals
    not_ready_requeue_after: int = 15  # poll while converging
    ready_requeue_after: int = 300  # periodic health re-check

    # Exponential backoff configuration
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            poll_interval=int(os.getenv("POLL_INTERVAL", "5")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            reconcile_timeout=int(os.getenv("RECONCILE_TIMEOUT", "120")),
            not_ready_requeue_after=int(os.getenv("NOT_READY_REQUEUE_AFTER", "15")),
            ready_requeue_after=int(os.getenv("READY_REQUEUE_AFTER", "300")),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class PacketConfig:
    """Packet API and credential lookup configuration."""

    api_url: str = "https://api.packet.net"
    request_timeout: int = 30
    secret_name: str = "packet-secret"
    secret_key: str = "apiKey"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            api_url=os.getenv("PACKET_API_URL", "https://api.packet.net"),
            request_timeout=int(os.getenv("PACKET_REQUEST_TIMEOUT", "30")),
            secret_name=os.getenv("PACKET_SECRET_NAME", "packet-secret"),
            secret_key=os.getenv("PACKET_SECRET_KEY", "apiKey"),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    packet: PacketConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            packet=PacketConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            packet=PacketConfig(),
            api=APIConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
