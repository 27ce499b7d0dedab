"""
Bundle loader for ``opa build`` archives.

A bundle is a gzip-compressed tar archive containing:
- /.manifest: JSON manifest (optional)
- /data.json: Data document bundled at build time (optional)
- *.rego: Policy sources, keyed by their in-archive path
- *.wasm: Compiled policy modules

Design Decisions:
    - Member names are normalized to a leading "/" (``./x`` and ``x`` both
      become ``/x``)
    - A WASM module is exposed only if the manifest lists it, in manifest
      order
    - Other members are ignored
    - The archive is read as a stream, so non-seekable readers work
"""

import io
import json
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from pydantic import ValidationError

from opawasm.bundle.manifest import Manifest, normalize_member_name
from opawasm.errors import BundleDataError, BundleError, BundleManifestError
from opawasm.log import get_logger


logger = get_logger("bundle")

MANIFEST_PATH = "/.manifest"
DATA_PATH = "/data.json"


@dataclass(frozen=True)
class WasmPolicy:
    """
    A compiled policy module from a bundle.

    Attributes:
        entrypoint: Entrypoint the module was compiled for
        module: In-archive path of the module
        bytes: The WASM binary
    """

    entrypoint: str
    module: str
    bytes: bytes

    def __repr__(self) -> str:
        return f"WasmPolicy(entrypoint={self.entrypoint!r}, module={self.module!r}, size={len(self.bytes)})"


@dataclass
class Bundle:
    """
    An OPA bundle created by ``opa build``.

    Attributes:
        manifest: The bundle manifest, if the archive has one
        data: The bundled data document, if the archive has one
        rego_policies: Rego sources keyed by in-archive path
        wasm_policies: Compiled modules listed in the manifest
        precompiled: Serialized native module attached with set_precompiled()

    Example:
        >>> bundle = Bundle.from_file("bundle.tar.gz")
        >>> runtime = RuntimeBuilder().build_from_bundle(bundle)
    """

    manifest: Manifest | None = None
    data: Any = None
    rego_policies: dict[str, str] = field(default_factory=dict)
    wasm_policies: list[WasmPolicy] = field(default_factory=list)
    precompiled: bytes | None = None

    @classmethod
    def from_file(cls, path: Path | str) -> "Bundle":
        """
        Load a bundle from a ``.tar.gz`` file.

        Raises:
            BundleError: If the file cannot be read or is not a bundle
            BundleManifestError: If the manifest is invalid
            BundleDataError: If data.json is not valid JSON
        """
        path = Path(path)
        try:
            with path.open("rb") as f:
                return cls._read(f, str(path))
        except OSError as e:
            raise BundleError(bundle_path=str(path), underlying_error=str(e)) from e

    @classmethod
    def from_bytes(cls, content: bytes) -> "Bundle":
        """Load a bundle from in-memory ``.tar.gz`` bytes."""
        return cls._read(io.BytesIO(content), "")

    @classmethod
    def from_reader(cls, reader: IO[bytes]) -> "Bundle":
        """Load a bundle from a binary file object; seeking is not required."""
        return cls._read(reader, str(getattr(reader, "name", "") or ""))

    def set_precompiled(self, serialized: bytes) -> None:
        """
        Attach a module serialized with ``wasmtime.Module.serialize``.

        RuntimeBuilder.build_from_bundle() prefers it over the WASM module.
        Only attach artifacts produced for the same wasmtime version and
        engine configuration.
        """
        self.precompiled = serialized

    @property
    def entrypoints(self) -> list[str]:
        """Entrypoints of the listed WASM modules."""
        return [policy.entrypoint for policy in self.wasm_policies]

    # =========================================================================
    # Archive reading
    # =========================================================================

    @classmethod
    def _read(cls, reader: IO[bytes], source: str) -> "Bundle":
        manifest: Manifest | None = None
        data: Any = None
        rego_policies: dict[str, str] = {}
        wasm_files: dict[str, bytes] = {}

        try:
            with tarfile.open(fileobj=reader, mode="r|gz") as archive:
                for member in archive:
                    if not member.isfile():
                        continue
                    name = normalize_member_name(member.name)
                    lower = name.lower()

                    if name == MANIFEST_PATH:
                        manifest = _parse_manifest(_read_member(archive, member), source)
                    elif name == DATA_PATH:
                        data = _parse_data(_read_member(archive, member), source)
                    elif lower.endswith(".rego"):
                        rego_policies[name] = _read_member(archive, member).decode("utf-8")
                    elif lower.endswith(".wasm"):
                        wasm_files[name] = _read_member(archive, member)
        except (tarfile.TarError, OSError, EOFError, UnicodeDecodeError) as e:
            raise BundleError(bundle_path=source, underlying_error=str(e)) from e

        wasm_policies: list[WasmPolicy] = []
        if manifest is not None:
            for entry in manifest.wasm:
                content = wasm_files.get(entry.module)
                if content is None:
                    logger.warning("manifest lists %s but the bundle does not contain it", entry.module)
                    continue
                wasm_policies.append(WasmPolicy(entry.entrypoint, entry.module, content))

        logger.debug(
            "loaded bundle %s: %d rego files, %d wasm modules",
            source or "<bytes>",
            len(rego_policies),
            len(wasm_policies),
        )
        return cls(
            manifest=manifest,
            data=data,
            rego_policies=rego_policies,
            wasm_policies=wasm_policies,
        )


def _read_member(archive: tarfile.TarFile, member: tarfile.TarInfo) -> bytes:
    f = archive.extractfile(member)
    if f is None:
        return b""
    return f.read()


def _parse_manifest(content: bytes, source: str) -> Manifest:
    try:
        return Manifest.model_validate_json(content)
    except ValidationError as e:
        raise BundleManifestError(bundle_path=source, underlying_error=str(e)) from e


def _parse_data(content: bytes, source: str) -> Any:
    try:
        return json.loads(content)
    except ValueError as e:
        raise BundleDataError(bundle_path=source, underlying_error=str(e)) from e
