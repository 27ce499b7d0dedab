"""
Bundle manifest schema definitions.

This module defines the Pydantic models for the ``/.manifest`` file that
``opa build`` writes into a bundle:
- WasmManifestEntry: One compiled module and the entrypoint it was built for
- Manifest: Complete bundle manifest

Design Decisions:
    - Unknown keys are ignored (manifests also carry metadata, rego_version
      and signing information this runtime does not use)
    - Every field has a default, an empty manifest is valid
    - Models are frozen (immutable after creation)
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Manifest Models
# =============================================================================


class WasmManifestEntry(BaseModel):
    """
    A WASM module listed in the manifest.

    Attributes:
        entrypoint: Entrypoint the module was compiled for (``pkg/rule``)
        module: In-archive path of the module (e.g. ``/policy.wasm``)
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    entrypoint: str = Field(
        default="",
        description="Entrypoint the module was compiled for",
    )
    module: str = Field(
        default="",
        description="Path of the module inside the bundle",
    )

    @field_validator("module")
    @classmethod
    def validate_module(cls, v: str) -> str:
        """Normalize the module path to the in-archive form."""
        return normalize_member_name(v) if v else v


class Manifest(BaseModel):
    """
    Manifest of a bundle created by ``opa build``.

    Attributes:
        revision: Bundle revision string
        roots: Data paths owned by the bundle
        wasm: Compiled modules in the bundle
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    revision: str = Field(
        default="",
        description="Bundle revision",
    )
    roots: list[str] = Field(
        default_factory=list,
        description="Data paths owned by the bundle",
    )
    wasm: list[WasmManifestEntry] = Field(
        default_factory=list,
        description="Compiled WASM modules",
    )


def normalize_member_name(name: str) -> str:
    """Normalize an archive member name to a rooted path (``./a/b`` and ``a/b`` become ``/a/b``)."""
    while name.startswith("./"):
        name = name[2:]
    if not name.startswith("/"):
        name = "/" + name
    return name
