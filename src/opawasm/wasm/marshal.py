"""
JSON marshaling between host values and guest documents.

Host values go in as compact JSON text that the guest parses into its own
document representation (opa_json_parse); guest documents come out as JSON
text (opa_json_dump) that is validated into the requested Python type with
a Pydantic TypeAdapter. Plain JSON values, Pydantic models and dataclasses
are all accepted as inputs.
"""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError, to_json

from opawasm.decision import type_name
from opawasm.errors import MarshalingError, NoResultsError
from opawasm.wasm.exports import GuestExports
from opawasm.wasm.memory import Addr, GuestMemory


T = TypeVar("T")


class ResultRecord(BaseModel, Generic[T]):
    """One element of an evaluation result set: ``{"result": ...}``."""

    model_config = ConfigDict(frozen=True)

    result: T


def encode_json(value: Any) -> bytes:
    """
    Serialize a host value to compact JSON bytes.

    Raises:
        MarshalingError: If the value is not JSON serializable
    """
    try:
        return to_json(value)
    except PydanticSerializationError as e:
        raise MarshalingError(
            direction="encode",
            target_type=type(value).__name__,
            underlying_error=str(e),
        ) from e


def decode_json(raw: bytes, result_type: Any = Any) -> Any:
    """
    Validate JSON bytes into ``result_type``.

    Validation is strict: a JSON value of the wrong type (``1`` for bool,
    ``"5"`` for int) is rejected, not coerced.

    Raises:
        MarshalingError: If the payload is malformed or does not match the type
    """
    try:
        return TypeAdapter(result_type).validate_json(raw, strict=True)
    except ValidationError as e:
        raise MarshalingError(
            direction="decode",
            target_type=type_name(result_type),
            underlying_error=str(e),
        ) from e


def last_result(raw: bytes, result_type: Any, entrypoint: str) -> Any:
    """
    Decode a result set and return the last record's result.

    Raises:
        NoResultsError: If the result set is empty
        MarshalingError: If the payload does not match the result set shape
    """
    records = decode_json(raw, list[ResultRecord[result_type]])
    if not records:
        raise NoResultsError(entrypoint=entrypoint, target_type=type_name(result_type))
    return records[-1].result


class JsonMarshaler:
    """Moves JSON documents in and out of guest memory."""

    def __init__(self, memory: GuestMemory, exports: GuestExports) -> None:
        self._memory = memory
        self._exports = exports

    def write_json(self, value: Any) -> Addr:
        """Serialize ``value`` and parse it into a guest document."""
        return self.write_encoded(encode_json(value))

    def write_encoded(self, raw: bytes) -> Addr:
        """
        Parse already-encoded JSON bytes into a guest document.

        The intermediate text buffer is released right away under the
        explicit discipline and left for the next rewind otherwise.
        """
        text_addr = self._memory.write_bytes(raw)
        doc = self._exports.call("opa_json_parse", int(text_addr), len(raw))
        self._memory.free(text_addr)

        if not doc:
            raise MarshalingError(
                direction="encode",
                target_type="document",
                underlying_error="opa_json_parse rejected the payload",
            )
        return Addr(doc)

    def read_raw(self, addr: Addr) -> bytes:
        """Dump the guest document at ``addr`` to JSON bytes."""
        text_addr = Addr(self._exports.call("opa_json_dump", int(addr)))
        try:
            raw = self._memory.read_null_terminated(text_addr)
        finally:
            self._memory.free(text_addr)

        if raw is None:
            raise MarshalingError(
                direction="decode",
                target_type="document",
                underlying_error=f"unterminated JSON text at address {int(text_addr)}",
            )
        return raw

    def read_json(self, addr: Addr, result_type: Any = Any) -> Any:
        """Dump the guest document at ``addr`` and decode it into ``result_type``."""
        return decode_json(self.read_raw(addr), result_type)
