# flock/config.py
"""
Application Configuration
Uses pydantic-settings for environment variable management
"""

from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables
    Create a .env file for local development
    """

    # === Application ===
    APP_NAME: str = "Flock Control Plane"
    APP_VERSION: str = "1.0.0"
    ENV: str = "development"  # development, staging, production
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # === API ===
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000
    API_PREFIX: str = "/api/v1"

    # === Database ===
    DATABASE_URL: str = "sqlite:///./flock.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # === Security ===
    ADMIN_SECRET: str = "change-me-admin-secret"

    # === CORS ===
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]
    CORS_ALLOW_CREDENTIALS: bool = True

    # === Overlay Network ===
    DEFAULT_DNS_DOMAIN: str = "flock.internal"
    DEFAULT_UNDERLAY_PORT_RANGE_START: int = 30000
    DEFAULT_UNDERLAY_PORT_RANGE_END: int = 31000  # exclusive

    # === Certificates ===
    CERT_MANAGER_BINARY: str = "nebula-cert-manager"
    CA_VALIDITY_DAYS: int = 7
    CA_CLOCK_SKEW_MINUTES: int = 5
    ENDPOINT_CERT_VALIDITY_DAYS: int = 3650

    # === Remote execution ===
    SSH_BINARY: str = "ssh"
    SSHPASS_BINARY: str = "sshpass"
    SSH_CONNECT_TIMEOUT: int = 10  # seconds, connection setup only
    IPAM_REMOTE_COMMAND: str = "flock-ipam"
    IPAM_REMOTE_DATABASE_URL: Optional[str] = None

    # === Deployed files ===
    REMOTE_CONFIG_DIR: str = "/etc/flock"
    REMOTE_STATE_DIR: str = "/opt/flock"
    NEBULA_BINARY: str = "/usr/local/bin/nebula"
    SYSTEMD_UNIT_DIR: str = "/etc/systemd/system"

    # === Logging & Audit ===
    ENABLE_AUDIT_LOG: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.ENV.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.ENV.lower() == "development"

    @property
    def default_underlay_port_range(self) -> tuple[int, int]:
        return (self.DEFAULT_UNDERLAY_PORT_RANGE_START, self.DEFAULT_UNDERLAY_PORT_RANGE_END)


@lru_cache()
def get_settings() -> Settings:
    """
    Cached settings instance
    Use this to get settings throughout the application
    """
    return Settings()


# Singleton instance
settings = get_settings()
