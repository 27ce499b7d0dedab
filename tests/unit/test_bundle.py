"""
Unit tests for bundle loading.

Tests cover:
- Manifest parsing and member name normalization
- Reading data, rego and wasm members
- Manifest-driven WASM selection
- Invalid archives, manifests and data files
"""

import io
import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from opawasm.bundle import Bundle, Manifest, WasmManifestEntry, normalize_member_name
from opawasm.errors import BundleDataError, BundleError, BundleManifestError

from policy_modules import USERS_DATA, make_bundle, manifest_json


# =============================================================================
# Manifest
# =============================================================================


class TestManifest:
    """Tests for the manifest models."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("policy.wasm", "/policy.wasm"),
            ("./policy.wasm", "/policy.wasm"),
            ("/policy.wasm", "/policy.wasm"),
            ("./example/a.rego", "/example/a.rego"),
        ],
    )
    def test_normalize_member_name(self, name: str, expected: str) -> None:
        """Member names are rooted at /."""
        assert normalize_member_name(name) == expected

    def test_empty_manifest(self) -> None:
        """Every field has a default."""
        manifest = Manifest.model_validate_json(b"{}")
        assert manifest.revision == ""
        assert manifest.roots == []
        assert manifest.wasm == []

    def test_unknown_keys_ignored(self) -> None:
        """Metadata the runtime does not use is accepted."""
        manifest = Manifest.model_validate({
            "revision": "abc",
            "rego_version": 1,
            "metadata": {"team": "platform"},
            "wasm": [{"entrypoint": "example/allow", "module": "policy.wasm", "annotations": []}],
        })
        assert manifest.revision == "abc"
        assert manifest.wasm == [WasmManifestEntry(entrypoint="example/allow", module="/policy.wasm")]

    def test_frozen(self) -> None:
        """Manifests are immutable."""
        manifest = Manifest(revision="a")
        with pytest.raises(ValidationError):
            manifest.revision = "b"


# =============================================================================
# Loading
# =============================================================================


class TestBundleLoad:
    """Tests for Bundle.from_bytes, from_file and from_reader."""

    def test_contents(self, bundle_bytes: bytes, v2_wasm: bytes) -> None:
        """Manifest, data, rego and wasm members are all read."""
        bundle = Bundle.from_bytes(bundle_bytes)

        assert bundle.manifest is not None
        assert bundle.manifest.revision == "rev-1"
        assert bundle.manifest.roots == ["example"]
        assert bundle.data == USERS_DATA
        assert list(bundle.rego_policies) == ["/example/policy.rego"]
        assert "package example" in bundle.rego_policies["/example/policy.rego"]
        assert len(bundle.wasm_policies) == 1
        assert bundle.wasm_policies[0].module == "/policy.wasm"
        assert bundle.wasm_policies[0].bytes == v2_wasm
        assert bundle.entrypoints == ["example/allow"]
        assert bundle.precompiled is None

    def test_from_file(self, bundle_path: Path) -> None:
        """A bundle file is loaded like its bytes."""
        bundle = Bundle.from_file(bundle_path)
        assert bundle.entrypoints == ["example/allow"]

    def test_from_reader(self, bundle_bytes: bytes) -> None:
        """Any binary reader works."""
        bundle = Bundle.from_reader(io.BytesIO(bundle_bytes))
        assert bundle.data == USERS_DATA

    def test_dot_slash_members(self, v1_wasm: bytes) -> None:
        """Members stored as ./name match manifest paths."""
        content = make_bundle({
            "./.manifest": manifest_json(("a/b", "/policy.wasm")),
            "./data.json": b"{}",
            "./policy.wasm": v1_wasm,
        })
        bundle = Bundle.from_bytes(content)
        assert bundle.data == {}
        assert bundle.entrypoints == ["a/b"]

    def test_unlisted_wasm_excluded(self, v1_wasm: bytes) -> None:
        """WASM files the manifest does not list are not exposed."""
        content = make_bundle({
            "/.manifest": manifest_json(("a/b", "/policy.wasm")),
            "/policy.wasm": v1_wasm,
            "/other.wasm": v1_wasm,
        })
        bundle = Bundle.from_bytes(content)
        assert [policy.module for policy in bundle.wasm_policies] == ["/policy.wasm"]

    def test_manifest_order(self, v1_wasm: bytes, v2_wasm: bytes) -> None:
        """WASM policies follow the manifest order."""
        content = make_bundle({
            "/.manifest": manifest_json(("first/rule", "/b.wasm"), ("second/rule", "/a.wasm")),
            "/a.wasm": v1_wasm,
            "/b.wasm": v2_wasm,
        })
        bundle = Bundle.from_bytes(content)
        assert bundle.entrypoints == ["first/rule", "second/rule"]

    def test_missing_module_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        """A listed module missing from the archive is skipped with a warning."""
        content = make_bundle({"/.manifest": manifest_json(("a/b", "/missing.wasm"))})
        bundle = Bundle.from_bytes(content)
        assert bundle.wasm_policies == []
        assert "/missing.wasm" in caplog.text

    def test_no_manifest(self, v1_wasm: bytes) -> None:
        """Without a manifest no WASM module is exposed."""
        content = make_bundle({"/policy.wasm": v1_wasm, "/data.json": b"[1]"})
        bundle = Bundle.from_bytes(content)
        assert bundle.manifest is None
        assert bundle.data == [1]
        assert bundle.wasm_policies == []

    def test_other_members_ignored(self) -> None:
        """Files that are not part of the bundle format are skipped."""
        bundle = Bundle.from_bytes(make_bundle({"/README.md": b"# notes", "/x/data.yaml": b"a: 1"}))
        assert bundle.data is None
        assert bundle.rego_policies == {}

    def test_set_precompiled(self, bundle_bytes: bytes) -> None:
        """A precompiled module can be attached after loading."""
        bundle = Bundle.from_bytes(bundle_bytes)
        bundle.set_precompiled(b"serialized")
        assert bundle.precompiled == b"serialized"

    def test_repr_omits_bytes(self, bundle_bytes: bytes) -> None:
        """WasmPolicy repr shows the size, not the binary."""
        policy = Bundle.from_bytes(bundle_bytes).wasm_policies[0]
        assert "size=" in repr(policy)
        assert "\\x00asm" not in repr(policy)


# =============================================================================
# Errors
# =============================================================================


class TestBundleErrors:
    """Tests for invalid bundles."""

    def test_not_gzip(self) -> None:
        """Bytes that are not a gzip tarball raise BundleError."""
        with pytest.raises(BundleError):
            Bundle.from_bytes(b"definitely not a bundle")

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing file raises BundleError with its path."""
        path = tmp_path / "missing.tar.gz"
        with pytest.raises(BundleError) as exc_info:
            Bundle.from_file(path)
        assert exc_info.value.bundle_path == str(path)

    @pytest.mark.parametrize(
        "manifest",
        [b"{not json", json.dumps({"wasm": "policy.wasm"}).encode(), json.dumps({"roots": 3}).encode()],
    )
    def test_invalid_manifest(self, manifest: bytes) -> None:
        """A malformed manifest raises BundleManifestError."""
        with pytest.raises(BundleManifestError):
            Bundle.from_bytes(make_bundle({"/.manifest": manifest}))

    def test_invalid_data(self) -> None:
        """A malformed data.json raises BundleDataError."""
        with pytest.raises(BundleDataError) as exc_info:
            Bundle.from_bytes(make_bundle({"/data.json": b'{"users": '}))
        assert exc_info.value.code == 6003

    def test_invalid_rego_encoding(self) -> None:
        """Rego sources must be UTF-8."""
        with pytest.raises(BundleError):
            Bundle.from_bytes(make_bundle({"/example/policy.rego": b"\xff\xfe"}))
