"""
Runtime configuration for opawasm.

RuntimeConfig carries the settings a RuntimeBuilder can be created from.
Handlers (abort/println) are code, so they are set on the builder directly;
everything that can live in a file lives here.

Example config.yaml:
    max_memory_pages: 256
    prefer_precompiled: true
    log_level: INFO
    guest_log_level: DEBUG
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from opawasm.errors import ConfigFileError


_LEVEL_NAMES = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class RuntimeConfig(BaseModel):
    """
    Settings for building policy runtimes.

    Attributes:
        max_memory_pages: Upper bound for the guest linear memory, in 64 KiB
            pages (None means unbounded)
        prefer_precompiled: Use a bundle's precompiled module when present
        log_level: Level for the opawasm logger hierarchy
        guest_log_level: Level used when logging the policy's println output
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_memory_pages: int | None = Field(
        default=None,
        ge=2,
        description="Maximum number of 64 KiB pages the guest memory may grow to",
    )
    prefer_precompiled: bool = Field(
        default=True,
        description="Prefer a bundle's precompiled module over the raw WASM module",
    )
    log_level: str = Field(
        default="WARNING",
        description="Log level for opawasm",
    )
    guest_log_level: str = Field(
        default="INFO",
        description="Log level for messages printed by the policy",
    )

    @field_validator("log_level", "guest_log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate that the level is a standard logging level name."""
        level = v.upper()
        if level not in _LEVEL_NAMES:
            msg = f"Invalid log level: {v}. Must be one of: {', '.join(sorted(_LEVEL_NAMES))}"
            raise ValueError(msg)
        return level

    @property
    def guest_log_level_number(self) -> int:
        """The guest log level as a logging module constant."""
        return logging.getLevelName(self.guest_log_level)


def load_config(path: Path | str) -> RuntimeConfig:
    """
    Load a runtime configuration from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated RuntimeConfig

    Raises:
        ConfigFileError: If the file is missing, not YAML, or invalid
    """
    path = Path(path)
    try:
        content = path.read_text()
    except OSError as e:
        raise ConfigFileError(config_path=str(path), validation_error=str(e)) from e
    return _parse_config(content, str(path))


def load_config_from_string(content: str) -> RuntimeConfig:
    """Load a runtime configuration from a YAML string."""
    return _parse_config(content, "<string>")


def _parse_config(content: str, source: str) -> RuntimeConfig:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigFileError(config_path=source, validation_error=f"Invalid YAML: {e}") from e

    try:
        return RuntimeConfig.model_validate(data or {})
    except ValidationError as e:
        raise ConfigFileError(config_path=source, validation_error=str(e)) from e
