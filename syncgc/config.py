"""Configuration loading for syncgc."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class NodeConfig:
    name: str = "syncgc-node"


@dataclass
class StoreConfig:
    """Configuration for the SQLite change store."""

    db_path: str = "~/.syncgc/sync.db"
    busy_timeout_seconds: float = 5.0


@dataclass
class ReclaimConfig:
    """Configuration for change-log reclamation."""

    enabled: bool = True
    batch_size: int = 100
    continuation_delay_ms: int = 500
    interval_seconds: int = 60  # Between drains in watch mode

    @property
    def continuation_delay(self) -> float:
        return self.continuation_delay_ms / 1000


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    reclaim: ReclaimConfig = field(default_factory=ReclaimConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with SYNCGC_ prefix."""
    return os.environ.get(f"SYNCGC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Node overrides
    if name := _get_env("NODE_NAME"):
        config.node.name = name

    # Store overrides
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path
    if busy_timeout := _get_env("BUSY_TIMEOUT"):
        config.store.busy_timeout_seconds = float(busy_timeout)

    # Reclaim overrides
    if enabled := _get_env("RECLAIM_ENABLED"):
        config.reclaim.enabled = enabled.lower() in ("true", "1", "yes")
    if batch_size := _get_env("RECLAIM_BATCH_SIZE"):
        config.reclaim.batch_size = int(batch_size)
    if delay_ms := _get_env("RECLAIM_DELAY_MS"):
        config.reclaim.continuation_delay_ms = int(delay_ms)
    if interval := _get_env("RECLAIM_INTERVAL"):
        config.reclaim.interval_seconds = int(interval)

    return config


def _validate(config: Config) -> None:
    """Reject settings the reclaimer cannot run with."""
    if config.reclaim.batch_size < 1:
        raise ValueError(
            f"reclaim.batch_size must be at least 1, got {config.reclaim.batch_size}"
        )
    if config.reclaim.continuation_delay_ms < 0:
        raise ValueError(
            "reclaim.continuation_delay_ms must not be negative, "
            f"got {config.reclaim.continuation_delay_ms}"
        )
    if config.reclaim.interval_seconds <= 0:
        raise ValueError(
            "reclaim.interval_seconds must be positive, "
            f"got {config.reclaim.interval_seconds}"
        )


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse node config
            if "node" in data:
                config.node = NodeConfig(
                    name=data["node"].get("name", config.node.name)
                )

            # Parse store config
            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    db_path=store_data.get("db_path", config.store.db_path),
                    busy_timeout_seconds=store_data.get(
                        "busy_timeout_seconds", config.store.busy_timeout_seconds
                    ),
                )

            # Parse reclaim config
            if "reclaim" in data:
                reclaim_data = data["reclaim"]
                config.reclaim = ReclaimConfig(
                    enabled=reclaim_data.get("enabled", config.reclaim.enabled),
                    batch_size=reclaim_data.get(
                        "batch_size", config.reclaim.batch_size
                    ),
                    continuation_delay_ms=reclaim_data.get(
                        "continuation_delay_ms",
                        config.reclaim.continuation_delay_ms,
                    ),
                    interval_seconds=reclaim_data.get(
                        "interval_seconds", config.reclaim.interval_seconds
                    ),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    _validate(config)
    return config
