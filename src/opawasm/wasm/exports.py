"""
Access to the policy module's exported functions and globals.

Every host-to-guest call goes through GuestExports.call, which converts
wasmtime traps into GuestTrapError and remembers that the instance trapped.
A trapped instance refuses all further calls: the guest's allocator and
evaluation state are unknown at that point.
"""

from collections.abc import Iterable

import wasmtime

from opawasm.errors import GuestTrapError, MissingExportError
from opawasm.log import get_logger


logger = get_logger("wasm.exports")


class GuestExports:
    """
    Export table of one instantiated policy module.

    Attributes:
        trapped: True once any guest call has trapped
    """

    def __init__(self, store: wasmtime.Store, instance: wasmtime.Instance) -> None:
        self._store = store
        self._exports = instance.exports(store)
        self.trapped = False

    def has(self, name: str) -> bool:
        """Whether the module exports ``name``."""
        try:
            self._exports[name]
        except KeyError:
            return False
        return True

    def require(self, names: Iterable[str]) -> None:
        """
        Check that every name in ``names`` is exported as a function.

        Raises:
            MissingExportError: Listing every missing export
        """
        missing = [
            name for name in names
            if not isinstance(self._lookup(name), wasmtime.Func)
        ]
        if missing:
            raise MissingExportError(exports=missing)

    def global_value(self, name: str, default: int = 0) -> int:
        """Value of an exported i32 global, or ``default`` if it is absent."""
        item = self._lookup(name)
        if not isinstance(item, wasmtime.Global):
            return default
        return int(item.value(self._store))

    def call(self, name: str, *args: int) -> int | None:
        """
        Call an exported function.

        Returns:
            The i32 result as an unsigned int, or None for void functions

        Raises:
            MissingExportError: If ``name`` is not an exported function
            GuestTrapError: If the call traps, or the instance trapped earlier
        """
        func = self._lookup(name)
        if not isinstance(func, wasmtime.Func):
            raise MissingExportError(exports=[name])
        if self.trapped:
            raise GuestTrapError(
                export=name,
                message="Policy module is unusable after an earlier trap",
            )

        try:
            result = func(self._store, *args)
        except (wasmtime.Trap, wasmtime.WasmtimeError) as e:
            self.trapped = True
            logger.debug("guest trap in %s: %s", name, e)
            raise GuestTrapError(export=name, underlying_error=str(e)) from e
        except BaseException:
            # Raised by a host import (e.g. the abort handler) mid-call.
            self.trapped = True
            raise

        if result is None:
            return None
        return int(result) & 0xFFFFFFFF

    def _lookup(self, name: str) -> object | None:
        try:
            return self._exports[name]
        except KeyError:
            return None
