from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, model_validator


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Work queue used for slow runs."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = "provisio.runs"
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Bounded exponential backoff for retryable steps."""

    attempts: int = 3
    base: float = 0.5
    cap: float = 8.0
    jitter: float = 0.1


class TimeoutConfig(BaseModel):
    """Default per-step timeouts in seconds."""

    local: float = 10.0
    download: float = 60.0
    build: float = 900.0


class HostConfig(BaseModel):
    """Filesystem layout and service names of the managed host."""

    web_root: str = "/var/www"
    web_user: str = "www-data"
    web_group: str = "www-data"
    apache_sites_dir: str = "/etc/apache2/sites-available"
    apache_service: str = "apache2"
    mail_root: str = "/var/mail"
    mail_user: str = "mail"
    mail_group: str = "mail"
    postfix_virtual_users: str = "/etc/postfix/virtual_users"
    dovecot_users: str = "/etc/dovecot/users"
    backup_dir: str = "/var/backups/control-panel"
    staging_dir: str = "/tmp/provisio"
    mysql_url: Optional[str] = None


class VaultConfig(BaseModel):
    """Where generated credentials are kept."""

    backend: Literal["memory", "file"] = "memory"
    directory: str = "/var/lib/provisio/secrets"


class WorkerConfig(BaseModel):
    """Worker pool size and crash recovery timing.

    A running saga saves itself every ``heartbeat`` seconds, so a run whose
    last save is older than ``stalled_after`` belongs to a dead process.
    """

    concurrency: int = 4
    heartbeat: float = 30.0
    stalled_after: float = 300.0

    @model_validator(mode="after")
    def _check_stall_window(self) -> "WorkerConfig":
        if self.heartbeat <= 0:
            raise ValueError("heartbeat must be positive")
        if self.stalled_after <= 2 * self.heartbeat:
            raise ValueError("stalled_after must exceed twice the heartbeat")
        return self


class ProvisioConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    retry: RetryConfig = RetryConfig()
    timeouts: TimeoutConfig = TimeoutConfig()
    host: HostConfig = HostConfig()
    vault: VaultConfig = VaultConfig()
    worker: WorkerConfig = WorkerConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> ProvisioConfig:
    """Read the YAML file at ``path`` (default ``$PROVISIO_CONFIG`` or ``config.yaml``).

    A missing file yields the defaults. ``PROVISIO_DATABASE_URL`` (or
    ``DATABASE_URL``), ``PROVISIO_MYSQL_URL`` and ``PROVISIO_TRANSPORT`` take
    precedence over the file.
    """
    config_path = path or os.getenv("PROVISIO_CONFIG", "config.yaml")
    data = {}
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    config = ProvisioConfig.model_validate(data)

    database_url = os.getenv("PROVISIO_DATABASE_URL") or os.getenv("DATABASE_URL")
    if database_url:
        config.database_url = database_url
    if os.getenv("PROVISIO_MYSQL_URL"):
        config.host.mysql_url = os.environ["PROVISIO_MYSQL_URL"]
    if os.getenv("PROVISIO_TRANSPORT"):
        config.transport.backend = os.environ["PROVISIO_TRANSPORT"].lower()
    return config
