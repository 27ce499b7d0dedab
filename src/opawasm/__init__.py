"""
opawasm - Evaluate Open Policy Agent policies compiled to WebAssembly.

opawasm loads modules produced by ``opa build -t wasm`` into wasmtime and
evaluates their entrypoints in-process.
It provides:
- A runtime builder with abort/println handlers and memory bounds
- Single-shot and context-based evaluation with typed results
- Support for both OPA WASM ABI memory disciplines (1.0/1.1 and 1.2+)
- Bundle loading and a client for remote OPA servers

Example usage:
    $ opawasm entrypoints bundle.tar.gz
    $ opawasm eval bundle.tar.gz example.allow -i '{"user_id": "alice"}'
"""

from opawasm.bundle import Bundle
from opawasm.config import RuntimeConfig, load_config
from opawasm.decision import PolicyDecision
from opawasm.errors import OpaWasmError
from opawasm.wasm import EvalContext, PolicyRuntime, RuntimeBuilder

__version__ = "0.1.0"
__author__ = "opawasm Contributors"

__all__ = [
    "Bundle",
    "EvalContext",
    "OpaWasmError",
    "PolicyDecision",
    "PolicyRuntime",
    "RuntimeBuilder",
    "RuntimeConfig",
    "__author__",
    "__version__",
    "load_config",
]
