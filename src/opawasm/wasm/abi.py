"""
ABI strategies.

OPA's WASM ABI changed how evaluation scratch memory is managed:

    - ABI 1.0/1.1 (ExplicitFreeStrategy): every guest allocation the host
      makes is released with opa_free; evaluation goes through an eval
      context record (opa_eval_ctx_*, eval).
    - ABI 1.2+ (HeapRewindStrategy): the host saves heap pointer
      checkpoints and reclaims scratch memory by resetting the heap pointer;
      single evaluations use the one-shot opa_eval export.

The runtime reads the ABI minor version once after instantiation and picks
one strategy; nothing else in the package branches on the version.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from opawasm.errors import MarshalingError
from opawasm.log import get_logger
from opawasm.wasm.exports import GuestExports
from opawasm.wasm.marshal import JsonMarshaler, encode_json, last_result
from opawasm.wasm.memory import Addr, GuestMemory


logger = get_logger("wasm.abi")

ABI_MINOR_VERSION_GLOBAL = "opa_wasm_abi_minor_version"
HEAP_REWIND_MIN_MINOR_VERSION = 2

# opa_eval arguments
_RESERVED = 0
_FORMAT_JSON = 0

_CONTEXT_EXPORTS = (
    "opa_malloc",
    "opa_json_parse",
    "opa_json_dump",
    "opa_eval_ctx_new",
    "opa_eval_ctx_set_input",
    "opa_eval_ctx_set_data",
    "opa_eval_ctx_set_entrypoint",
    "opa_eval_ctx_get_result",
    "eval",
)


@dataclass(frozen=True)
class ContextHandle:
    """Guest addresses owned by one evaluation context."""

    input_addr: Addr
    ctx_addr: Addr


class AbiStrategy(ABC):
    """Memory discipline and evaluation algorithm for one ABI generation."""

    name: ClassVar[str]
    required_exports: ClassVar[tuple[str, ...]]
    rewinds: ClassVar[bool]

    def __init__(self, exports: GuestExports, memory: GuestMemory, marshaler: JsonMarshaler) -> None:
        self._exports = exports
        self._memory = memory
        self._marshaler = marshaler

    def initialize(self) -> None:
        """Hook run once after the entrypoint table has been read."""

    @abstractmethod
    def install_data(self, previous: Addr | None, raw: bytes) -> Addr:
        """Replace the dataset document with the encoded ``raw`` JSON and return its address."""

    @abstractmethod
    def evaluate(
        self,
        entrypoint: str,
        entrypoint_id: int,
        data_addr: Addr,
        input_value: Any,
        result_type: Any,
    ) -> Any:
        """Evaluate one entrypoint against ``input_value``."""

    @abstractmethod
    def open_context(self, data_addr: Addr, input_value: Any) -> ContextHandle:
        """Write the input and build a guest eval context bound to it and the data."""

    @abstractmethod
    def context_eval(
        self,
        handle: ContextHandle,
        entrypoint: str,
        entrypoint_id: int,
        result_type: Any,
    ) -> Any:
        """Evaluate one entrypoint inside an open context."""

    @abstractmethod
    def close_context(self, handle: ContextHandle) -> None:
        """Release the guest memory owned by an open context."""

    def _bind_context(self, data_addr: Addr, input_value: Any) -> ContextHandle:
        input_addr = self._marshaler.write_json(input_value)
        ctx_addr = Addr(self._exports.call("opa_eval_ctx_new"))
        self._exports.call("opa_eval_ctx_set_input", int(ctx_addr), int(input_addr))
        self._exports.call("opa_eval_ctx_set_data", int(ctx_addr), int(data_addr))
        return ContextHandle(input_addr=input_addr, ctx_addr=ctx_addr)

    def _run_context(self, handle: ContextHandle, entrypoint_id: int) -> Addr:
        self._exports.call("opa_eval_ctx_set_entrypoint", int(handle.ctx_addr), entrypoint_id)
        self._exports.call("eval", int(handle.ctx_addr))
        return Addr(self._exports.call("opa_eval_ctx_get_result", int(handle.ctx_addr)))


class ExplicitFreeStrategy(AbiStrategy):
    """ABI 1.0/1.1: malloc/free pairs and context-based evaluation."""

    name = "explicit-free"
    required_exports = (*_CONTEXT_EXPORTS, "opa_free")
    rewinds = False

    def install_data(self, previous: Addr | None, raw: bytes) -> Addr:
        if previous is not None:
            self._memory.free(previous)
        return self._marshaler.write_encoded(raw)

    def evaluate(
        self,
        entrypoint: str,
        entrypoint_id: int,
        data_addr: Addr,
        input_value: Any,
        result_type: Any,
    ) -> Any:
        handle = self.open_context(data_addr, input_value)
        try:
            result = self.context_eval(handle, entrypoint, entrypoint_id, result_type)
        except Exception:
            self._close_quietly(handle)
            raise
        self.close_context(handle)
        return result

    def open_context(self, data_addr: Addr, input_value: Any) -> ContextHandle:
        return self._bind_context(data_addr, input_value)

    def context_eval(
        self,
        handle: ContextHandle,
        entrypoint: str,
        entrypoint_id: int,
        result_type: Any,
    ) -> Any:
        result_addr = self._run_context(handle, entrypoint_id)
        try:
            raw = self._marshaler.read_raw(result_addr)
        finally:
            self._memory.free(result_addr)
        return last_result(raw, result_type, entrypoint)

    def close_context(self, handle: ContextHandle) -> None:
        self._memory.free(handle.input_addr)
        self._memory.free(handle.ctx_addr)

    def _close_quietly(self, handle: ContextHandle) -> None:
        try:
            self.close_context(handle)
        except Exception as e:
            logger.warning("failed to release eval context after an error: %s", e)


class HeapRewindStrategy(AbiStrategy):
    """
    ABI 1.2+: heap pointer checkpoints and one-shot opa_eval.

    Checkpoints:
        base_heap_ptr: end of initialization, start of the dataset
        data_heap_ptr: end of the dataset, start of per-input scratch
    """

    name = "heap-rewind"
    required_exports = (*_CONTEXT_EXPORTS, "opa_eval", "opa_heap_ptr_get", "opa_heap_ptr_set")
    rewinds = True

    def __init__(self, exports: GuestExports, memory: GuestMemory, marshaler: JsonMarshaler) -> None:
        super().__init__(exports, memory, marshaler)
        self.base_heap_ptr = Addr(0)
        self.data_heap_ptr = Addr(0)

    def initialize(self) -> None:
        self.base_heap_ptr = self._memory.heap_ptr()
        self.data_heap_ptr = self.base_heap_ptr
        logger.debug("heap checkpoints at %d", int(self.base_heap_ptr))

    def install_data(self, previous: Addr | None, raw: bytes) -> Addr:
        self._memory.set_heap_ptr(self.base_heap_ptr)
        data_addr = self._marshaler.write_encoded(raw)
        self.data_heap_ptr = self._memory.heap_ptr()
        return data_addr

    def evaluate(
        self,
        entrypoint: str,
        entrypoint_id: int,
        data_addr: Addr,
        input_value: Any,
        result_type: Any,
    ) -> Any:
        raw_input = encode_json(input_value)
        input_addr = self.data_heap_ptr
        heap_ptr = input_addr + len(raw_input)

        try:
            self._memory.write(input_addr, raw_input)
            result_addr = self._exports.call(
                "opa_eval",
                _RESERVED,
                entrypoint_id,
                int(data_addr),
                int(input_addr),
                len(raw_input),
                int(heap_ptr),
                _FORMAT_JSON,
            )
            raw = self._memory.read_null_terminated(Addr(result_addr))
        finally:
            if not self._exports.trapped:
                self._memory.set_heap_ptr(self.data_heap_ptr)

        if raw is None:
            raise MarshalingError(
                direction="decode",
                target_type="result set",
                underlying_error=f"unterminated result at address {result_addr}",
            )
        return last_result(raw, result_type, entrypoint)

    def open_context(self, data_addr: Addr, input_value: Any) -> ContextHandle:
        self._memory.set_heap_ptr(self.data_heap_ptr)
        return self._bind_context(data_addr, input_value)

    def context_eval(
        self,
        handle: ContextHandle,
        entrypoint: str,
        entrypoint_id: int,
        result_type: Any,
    ) -> Any:
        saved = self._memory.heap_ptr()
        try:
            result_addr = self._run_context(handle, entrypoint_id)
            raw = self._marshaler.read_raw(result_addr)
        finally:
            if not self._exports.trapped:
                self._memory.set_heap_ptr(saved)
        return last_result(raw, result_type, entrypoint)

    def close_context(self, handle: ContextHandle) -> None:
        self._memory.set_heap_ptr(self.data_heap_ptr)


def select_strategy(abi_minor_version: int) -> type[AbiStrategy]:
    """Pick the strategy class for a module's ABI minor version."""
    if abi_minor_version >= HEAP_REWIND_MIN_MINOR_VERSION:
        return HeapRewindStrategy
    return ExplicitFreeStrategy
