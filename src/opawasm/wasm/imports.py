"""
Host functions imported by the policy module.

A compiled OPA policy imports:
    - env.memory: the linear memory, allocated by the host
    - env.opa_abort(addr): the policy hit an unrecoverable error
    - env.opa_println(addr): output of the Rego print() builtin
    - env.opa_builtin0..4(id, ctx, args...): builtins the module does not
      implement itself

Builtins are not executed by this runtime; the stubs return 0, which the
module treats as "undefined", so an expression that needs a missing builtin
is undefined rather than an error.
"""

import logging
from collections.abc import Callable
from typing import NoReturn

import wasmtime

from opawasm.errors import GuestAbortError
from opawasm.log import get_logger
from opawasm.wasm.memory import read_null_terminated_string


AbortHandler = Callable[[str], None]
PrintlnHandler = Callable[[str], None]

INVALID_STRING = "invalid string in memory"
UNDEFINED = 0
MAX_BUILTIN_ARITY = 4

guest_logger = get_logger("guest")
logger = get_logger("wasm.imports")


def default_abort_handler(message: str) -> NoReturn:
    """Abort the current evaluation."""
    raise GuestAbortError(export="opa_abort", guest_message=message)


def println_logger(level: int = logging.INFO) -> PrintlnHandler:
    """Build a println handler that logs policy output at ``level``."""

    def handler(message: str) -> None:
        guest_logger.log(level, message)

    return handler


default_println_handler = println_logger(logging.INFO)


class HostImports:
    """
    The fixed import set for one module instance.

    Attributes:
        memory: The host-allocated linear memory
    """

    def __init__(
        self,
        memory: wasmtime.Memory,
        on_abort: AbortHandler | None = None,
        on_println: PrintlnHandler | None = None,
    ) -> None:
        self.memory = memory
        self._on_abort = on_abort or default_abort_handler
        self._on_println = on_println or default_println_handler

    def define(self, linker: wasmtime.Linker, store: wasmtime.Store) -> None:
        """Register memory, abort, println and the builtin stubs under ``env``."""
        i32 = wasmtime.ValType.i32()

        linker.define(store, "env", "memory", self.memory)
        linker.define_func(
            "env", "opa_abort", wasmtime.FuncType([i32], []), self._abort, access_caller=True
        )
        linker.define_func(
            "env", "opa_println", wasmtime.FuncType([i32], []), self._println, access_caller=True
        )

        for arity in range(MAX_BUILTIN_ARITY + 1):
            linker.define_func(
                "env",
                f"opa_builtin{arity}",
                wasmtime.FuncType([i32] * (arity + 2), [i32]),
                self._builtin_stub(arity),
            )

    def _abort(self, caller: wasmtime.Caller, addr: int) -> None:
        message = read_null_terminated_string(self.memory, caller, addr & 0xFFFFFFFF)
        self._on_abort(message if message is not None else INVALID_STRING)

    def _println(self, caller: wasmtime.Caller, addr: int) -> None:
        message = read_null_terminated_string(self.memory, caller, addr & 0xFFFFFFFF)
        if message is None:
            self._on_abort(INVALID_STRING)
            return
        self._on_println(message)

    @staticmethod
    def _builtin_stub(arity: int) -> Callable[..., int]:
        def stub(builtin_id: int, ctx: int, *args: int) -> int:
            logger.debug("builtin %d called with %d args, returning undefined", builtin_id, arity)
            return UNDEFINED

        return stub
