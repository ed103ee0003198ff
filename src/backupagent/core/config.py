"""Configuration classes for backupagent.

Configuration objects are built once and passed explicitly into the
catalog client and every coordinator.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Environment variable prefix for overrides
ENV_PREFIX = "BACKUPAGENT_"

# Parts above this size go through the multipart path (bytes)
MULTIPART_UPLOAD_LOWER_BOUND = 15 * 1000 * 1000

DEFAULT_MULTIPART_CONCURRENCY = 15


def default_concurrency() -> int:
    """Return the default worker count (number of processors)."""
    return os.cpu_count() or 4


@dataclass
class ServerConfig:
    """Configuration for connecting to the backup catalog API.

    Attributes:
        api_url: Base URL of the catalog API (e.g., "https://backup.example.com/api").
        access_key: Agent access key.
        secret_key: Agent secret key.
        machine_id: Identifier of this machine in the catalog.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    api_url: str
    access_key: str
    secret_key: str
    machine_id: str = ""
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize API URL."""
        self.api_url = self.api_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.api_url.startswith("https://")


@dataclass
class RetryPolicy:
    """Bounded exponential backoff shared by every coordinator.

    Attributes:
        max_retries: Retry attempts after the first failure.
        initial_backoff: Delay before the first retry, in seconds.
        max_backoff: Upper bound on a single delay, in seconds.
        multiplier: Growth factor applied after each retry.
    """

    max_retries: int = 5
    initial_backoff: float = 1.0
    max_backoff: float = 60.0
    multiplier: float = 2.0

    def delays(self) -> list[float]:
        """Return the sleep schedule between attempts."""
        result = []
        backoff = self.initial_backoff
        for _ in range(self.max_retries):
            result.append(backoff)
            backoff = min(backoff * self.multiplier, self.max_backoff)
        return result


@dataclass
class TransferConfig:
    """Concurrency and sizing of the transfer pipeline.

    Attributes:
        upload_concurrency: Concurrent chunk uploads per file.
        download_concurrency: Concurrent chunk downloads per restore.
        multipart_concurrency: Concurrent part uploads per object.
        queue_size: Items the producer may read ahead of the workers.
        part_size: Size of multipart parts in bytes.
        retry: Retry policy for catalog and volume calls.
    """

    upload_concurrency: int = field(default_factory=default_concurrency)
    download_concurrency: int = field(default_factory=default_concurrency)
    multipart_concurrency: int = DEFAULT_MULTIPART_CONCURRENCY
    queue_size: int = 0
    part_size: int = MULTIPART_UPLOAD_LOWER_BOUND
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        for name in ("upload_concurrency", "download_concurrency", "multipart_concurrency"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.part_size < 1:
            raise ValueError("part_size must be positive")

    def queue_size_for(self, workers: int) -> int:
        """Return the bounded queue size for a pool of workers."""
        return self.queue_size or workers * 2


@dataclass
class AgentConfig:
    """Full agent configuration."""

    server: ServerConfig
    transfer: TransferConfig = field(default_factory=TransferConfig)
    skip_unreadable: bool = False
    volume: dict[str, str | None] = field(default_factory=lambda: {"type": "s3"})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentConfig:
        """Create from a parsed configuration dictionary."""
        transfer_data = dict(data.get("transfer", {}))
        retry = RetryPolicy(**transfer_data.pop("retry", {}))
        return cls(
            server=ServerConfig(
                api_url=data["api_url"],
                access_key=data["access_key"],
                secret_key=data["secret_key"],
                machine_id=data.get("machine_id", ""),
                timeout=float(data.get("timeout", 30.0)),
                verify_ssl=bool(data.get("verify_ssl", True)),
            ),
            transfer=TransferConfig(retry=retry, **transfer_data),
            skip_unreadable=bool(data.get("skip_unreadable", False)),
            volume=dict(data.get("volume", {"type": "s3"})),
        )


def get_config_dir() -> Path:
    """Get the configuration directory for BackupAgent.

    Returns:
        Path to ~/.backupagent or equivalent.
    """
    return Path.home() / ".backupagent"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for key in ("api_url", "access_key", "secret_key", "machine_id", "timeout"):
        value = environ.get(ENV_PREFIX + key.upper())
        if value is not None:
            overrides[key] = value
    skip = environ.get(ENV_PREFIX + "SKIP_UNREADABLE")
    if skip is not None:
        overrides["skip_unreadable"] = skip.lower() in ("1", "true", "yes")
    return overrides


def load_config(
    path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> AgentConfig:
    """Load configuration from a JSON file and environment overrides.

    Args:
        path: Config file path. Defaults to ~/.backupagent/config.json.
        environ: Environment mapping. Defaults to os.environ.

    Returns:
        Parsed AgentConfig.

    Raises:
        ValueError: If a required setting is missing.
    """
    config_file = path or get_config_file()
    data: dict[str, Any] = {}
    if config_file.exists():
        data = dict(json.loads(config_file.read_text()))

    data.update(_env_overrides(dict(os.environ) if environ is None else environ))

    missing = [key for key in ("api_url", "access_key", "secret_key") if not data.get(key)]
    if missing:
        raise ValueError(f"Missing configuration: {', '.join(missing)}")

    return AgentConfig.from_dict(data)
