"""
WebAssembly policy runtime.

Key Components:
    - RuntimeBuilder: Compiles and instantiates policy modules
    - PolicyRuntime: Evaluates entrypoints of one module instance
    - EvalContext: Reusable evaluation session bound to one input
"""

from opawasm.wasm.context import ContextState, EvalContext
from opawasm.wasm.runtime import PolicyRuntime, RuntimeBuilder

__all__ = [
    "ContextState",
    "EvalContext",
    "PolicyRuntime",
    "RuntimeBuilder",
]
