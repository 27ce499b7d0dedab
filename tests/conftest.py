"""
Pytest configuration and fixtures for opawasm tests.

This module provides shared fixtures used across unit and integration
tests: compiled test policies (see policy_modules), built runtimes and
bundles.
"""

import json
import logging
from collections.abc import Generator
from pathlib import Path

import pytest

from opawasm.wasm import PolicyRuntime, RuntimeBuilder

from policy_modules import USERS_DATA, compile_wat, make_bundle, manifest_json, policy_wat


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def restore_log_level() -> Generator[None, None, None]:
    """Undo log level changes made by CLI runs (setup_logging)."""
    logger = logging.getLogger("opawasm")
    level = logger.level
    yield
    logger.setLevel(level)


@pytest.fixture(scope="session")
def v1_wasm() -> bytes:
    """Test policy without an ABI minor version (explicit free)."""
    return compile_wat(policy_wat(None))


@pytest.fixture(scope="session")
def v2_wasm() -> bytes:
    """Test policy with ABI minor version 2 (heap rewind)."""
    return compile_wat(policy_wat(2))


@pytest.fixture(params=["v1", "v2"])
def policy_wasm(request: pytest.FixtureRequest, v1_wasm: bytes, v2_wasm: bytes) -> bytes:
    """Both flavours of the test policy."""
    return v1_wasm if request.param == "v1" else v2_wasm


@pytest.fixture
def v1_runtime(v1_wasm: bytes) -> PolicyRuntime:
    """A built v1 runtime without data."""
    return RuntimeBuilder().build(v1_wasm)


@pytest.fixture
def v2_runtime(v2_wasm: bytes) -> PolicyRuntime:
    """A built v2 runtime without data."""
    return RuntimeBuilder().build(v2_wasm)


@pytest.fixture
def runtime(policy_wasm: bytes) -> PolicyRuntime:
    """A runtime of either flavour with an empty data document."""
    runtime = RuntimeBuilder().build(policy_wasm)
    runtime.set_data({})
    return runtime


@pytest.fixture
def bundle_bytes(v2_wasm: bytes) -> bytes:
    """A bundle with a manifest, data, a rego source and the v2 module."""
    return make_bundle({
        "/.manifest": manifest_json(("example/allow", "/policy.wasm")),
        "/data.json": json.dumps(USERS_DATA).encode(),
        "/example/policy.rego": b"package example\n\ndefault allow := false\n",
        "/policy.wasm": v2_wasm,
    })


@pytest.fixture
def bundle_path(tmp_path: Path, bundle_bytes: bytes) -> Path:
    """The bundle fixture written to a file."""
    path = tmp_path / "bundle.tar.gz"
    path.write_bytes(bundle_bytes)
    return path
