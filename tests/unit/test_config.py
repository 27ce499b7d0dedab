"""
Unit tests for runtime configuration.

Tests cover:
- RuntimeConfig defaults and validation
- YAML loading helpers
- Applying a config to a RuntimeBuilder
"""

import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from opawasm.config import RuntimeConfig, load_config, load_config_from_string
from opawasm.errors import ConfigFileError
from opawasm.wasm import RuntimeBuilder


# =============================================================================
# RuntimeConfig Tests
# =============================================================================


class TestRuntimeConfig:
    """Tests for RuntimeConfig model."""

    def test_default_values(self) -> None:
        """Defaults are unbounded memory and precompiled modules preferred."""
        config = RuntimeConfig()
        assert config.max_memory_pages is None
        assert config.prefer_precompiled is True
        assert config.log_level == "WARNING"
        assert config.guest_log_level == "INFO"

    def test_levels_normalized(self) -> None:
        """Level names are case-insensitive."""
        config = RuntimeConfig(log_level="debug", guest_log_level="warning")
        assert config.log_level == "DEBUG"
        assert config.guest_log_level_number == logging.WARNING

    def test_invalid_level_rejected(self) -> None:
        """Unknown level names are rejected."""
        with pytest.raises(ValidationError):
            RuntimeConfig(log_level="LOUD")

    def test_too_few_pages_rejected(self) -> None:
        """The memory bound cannot be below the initial size."""
        with pytest.raises(ValidationError):
            RuntimeConfig(max_memory_pages=1)

    def test_extra_fields_rejected(self) -> None:
        """Unknown keys are rejected."""
        with pytest.raises(ValidationError):
            RuntimeConfig(max_pages=10)

    def test_config_is_immutable(self) -> None:
        """Config cannot be modified after creation."""
        config = RuntimeConfig()
        with pytest.raises(ValidationError):
            config.prefer_precompiled = False


# =============================================================================
# Loading Tests
# =============================================================================


class TestLoadConfig:
    """Tests for YAML loading helpers."""

    def test_load_from_string(self) -> None:
        """Load a full config from YAML text."""
        config = load_config_from_string(
            """
max_memory_pages: 64
prefer_precompiled: false
log_level: info
guest_log_level: DEBUG
"""
        )
        assert config.max_memory_pages == 64
        assert config.prefer_precompiled is False
        assert config.log_level == "INFO"
        assert config.guest_log_level == "DEBUG"

    def test_empty_document_uses_defaults(self) -> None:
        """An empty file is a default config."""
        assert load_config_from_string("") == RuntimeConfig()

    def test_load_from_file(self, tmp_path: Path) -> None:
        """Load a config from a file."""
        path = tmp_path / "opawasm.yaml"
        path.write_text("max_memory_pages: 16\n")
        assert load_config(path).max_memory_pages == 16

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing file raises ConfigFileError."""
        with pytest.raises(ConfigFileError) as exc_info:
            load_config(tmp_path / "missing.yaml")
        assert "missing.yaml" in str(exc_info.value)

    def test_invalid_yaml(self) -> None:
        """Malformed YAML raises ConfigFileError."""
        with pytest.raises(ConfigFileError) as exc_info:
            load_config_from_string("max_memory_pages: [1, 2")
        assert "Invalid YAML" in str(exc_info.value)

    def test_invalid_values(self) -> None:
        """Schema violations raise ConfigFileError."""
        with pytest.raises(ConfigFileError):
            load_config_from_string("max_memory_pages: 1\n")


# =============================================================================
# Builder Integration Tests
# =============================================================================


class TestBuilderFromConfig:
    """Tests for RuntimeBuilder.from_config."""

    def test_applies_settings(self, v1_wasm: bytes) -> None:
        """The memory bound is applied to the built runtime."""
        config = RuntimeConfig(max_memory_pages=8)
        runtime = RuntimeBuilder.from_config(config).build(v1_wasm)
        assert runtime._memory.max_pages == 8

    def test_leaves_logger_level_alone(self) -> None:
        """Building from a config does not touch the package logger."""
        logger = logging.getLogger("opawasm")
        level = logger.level
        RuntimeBuilder.from_config(RuntimeConfig(log_level="ERROR"))
        assert logger.level == level

    def test_guest_log_level(self, v1_wasm: bytes, caplog: pytest.LogCaptureFixture) -> None:
        """Policy output is logged at the configured level."""
        caplog.set_level(logging.DEBUG, logger="opawasm.guest")
        config = RuntimeConfig(guest_log_level="WARNING")
        runtime = RuntimeBuilder.from_config(config).build(v1_wasm)
        runtime.set_data({})

        assert runtime.eval("debug/print") is True
        records = [r for r in caplog.records if r.name == "opawasm.guest"]
        assert [r.levelno for r in records] == [logging.WARNING]
        assert records[0].getMessage() == "hello from policy"
