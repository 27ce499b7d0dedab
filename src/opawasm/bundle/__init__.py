"""
Bundle support for opawasm.

This module reads the ``.tar.gz`` bundles produced by ``opa build``.

Key Components:
    - Bundle: Manifest, data document, rego sources and compiled modules
    - WasmPolicy: One compiled module with its entrypoint
    - Manifest: Pydantic model for /.manifest
"""

from opawasm.bundle.loader import Bundle, WasmPolicy
from opawasm.bundle.manifest import Manifest, WasmManifestEntry, normalize_member_name

__all__ = [
    "Bundle",
    "Manifest",
    "WasmManifestEntry",
    "WasmPolicy",
    "normalize_member_name",
]
