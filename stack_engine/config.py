#stack_engine/config.py

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Engine configuration from environment variables (prefix STACK_)."""

    model_config = SettingsConfigDict(
        env_prefix="STACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Deployment spec
    spec_path: str = "stack.yaml"

    # Health monitor
    monitor_tick_seconds: float = 10.0
    degrade_threshold: int = Field(default=3, ge=1)
    fail_threshold: int = Field(default=3, ge=1)
    cert_check_seconds: float = 3600.0

    # Repair / renewal backoff (10s, 30s, 90s, ... capped)
    backoff_base_seconds: float = 10.0
    backoff_multiplier: float = 3.0
    backoff_cap_seconds: float = 600.0

    # Deadlines
    driver_timeout_seconds: float = 300.0
    probe_timeout_seconds: float = 10.0
    dns_timeout_seconds: float = 5.0
    cert_timeout_seconds: float = 120.0

    # Apply
    max_parallel: int = Field(default=4, ge=1)

    # Certificates
    renewal_fraction: float = Field(default=1 / 3, gt=0, lt=1)
    self_signed_validity_days: int = Field(default=90, ge=1)
    acme_endpoint: Optional[str] = None
    acme_contact_email: str = "admin@localhost"

    # DNS
    dig_binary: str = "dig"

    # Containers
    docker_network: str = "stack"

    # TLS proxy (Caddy) in front of every domain
    proxy_enabled: bool = True
    proxy_image: str = "caddy:2"
    proxy_https_port: int = 443

    # Persistence
    database_url: str = "sqlite:///stack_engine.db"
    echo_sql: bool = False

    # Operational API
    api_host: str = "127.0.0.1"
    api_port: int = 8700

    log_level: str = "INFO"


settings = EngineSettings()
