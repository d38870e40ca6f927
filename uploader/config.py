"""Configuration settings for the upload engine."""

import json
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from common.constants import (
    DEFAULT_CHUNK_SIZE_BYTES,
    DEFAULT_CONFIRMATION_TIMEOUT_MS,
    DEFAULT_GAS_MULTIPLIER,
    DEFAULT_MAX_RETRIES_PER_CHUNK,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_RUN_TIMEOUT_MS,
)
from common.logging_config import get_logger
from uploader.exceptions import InvalidConfigurationError
from uploader.schemas import RunConfig

logger = get_logger(__name__)


CONFIG_PATH = os.environ.get("RAIDCHAIN_CONFIG_PATH", str(Path.home() / ".raidchain" / "config.json"))


def _chunk_size_from_env(value: str):
    return value if value == "auto" else int(value)


class Config:
    """Manages upload configuration stored in a JSON file."""

    DEFAULT_CONFIG = {
        "chunk_size_bytes": _chunk_size_from_env(
            os.environ.get("RAIDCHAIN_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE_BYTES))
        ),
        "allocator_kind": os.environ.get("RAIDCHAIN_ALLOCATOR", "round-robin"),
        "confirmation_kind": os.environ.get("RAIDCHAIN_CONFIRMATION", "polling"),
        "confirmation_timeout_ms": DEFAULT_CONFIRMATION_TIMEOUT_MS,
        "poll_interval_ms": DEFAULT_POLL_INTERVAL_MS,
        "target_endpoint": None,
        "endpoint_count": None,
        "max_concurrent_uploads": None,
        "max_retries_per_chunk": DEFAULT_MAX_RETRIES_PER_CHUNK,
        "run_timeout_ms": DEFAULT_RUN_TIMEOUT_MS,
        "gas_multiplier": DEFAULT_GAS_MULTIPLIER,
        "rerank_every": None,
    }

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to config JSON file (defaults to $RAIDCHAIN_CONFIG_PATH)
        """
        self.config_path = Path(config_path or CONFIG_PATH)
        self.data = self._load()

    def _load(self) -> dict:
        """
        Load configuration from file, falling back to defaults if absent.

        Returns:
            Configuration dictionary

        Raises:
            InvalidConfigurationError: If the file exists but is not valid JSON
        """
        config = self.DEFAULT_CONFIG.copy()
        if not self.config_path.exists():
            return config

        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise InvalidConfigurationError(f"Cannot read config file {self.config_path}: {e}") from e

        if not isinstance(data, dict):
            raise InvalidConfigurationError(f"Config file {self.config_path} must contain a JSON object")

        config.update(data)
        return config

    def save(self) -> None:
        """Save current configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w') as f:
            json.dump(self.data, f, indent=2)

    def set(self, key: str, value) -> None:
        if key not in self.DEFAULT_CONFIG:
            raise InvalidConfigurationError(f"Unknown configuration key: {key}")
        self.data[key] = value

    def to_run_config(self, **overrides) -> RunConfig:
        """
        Build a validated run configuration.

        Args:
            **overrides: Values taking precedence over the stored configuration

        Returns:
            RunConfig

        Raises:
            InvalidConfigurationError: If any value fails validation
        """
        values = {**self.data, **overrides}
        return build_run_config(**values)


def build_run_config(**values) -> RunConfig:
    """
    Validate raw configuration values into a RunConfig.

    Raises:
        InvalidConfigurationError: If any value fails validation
    """
    try:
        return RunConfig(**values)
    except ValidationError as e:
        logger.error(f"Invalid run configuration: {e}")
        raise InvalidConfigurationError(str(e)) from e
