"""
Guest memory accessor.

The policy module exchanges all data through one linear memory region that
the host allocates and imports into the module as ``env.memory``. Guest
addresses are plain 32-bit offsets into that region; this module wraps them
in the Addr value type and provides the only code that reads or writes the
region.

Two allocation disciplines exist:
    - explicit: every opa_malloc is paired with an opa_free (ABI 1.0/1.1)
    - rewind: scratch memory is reclaimed by resetting the guest heap
      pointer (ABI 1.2+), so free() is a no-op
"""

from dataclasses import dataclass

import wasmtime

from opawasm.errors import GuestMemoryError
from opawasm.wasm.exports import GuestExports


PAGE_SIZE = 64 * 1024
INITIAL_PAGES = 2

_READ_CHUNK = 4096


@dataclass(frozen=True)
class Addr:
    """An offset into the guest's linear memory. Carries no ownership."""

    offset: int

    def __post_init__(self) -> None:
        if not 0 <= self.offset <= 0xFFFFFFFF:
            msg = f"Guest address out of range: {self.offset}"
            raise ValueError(msg)

    def __int__(self) -> int:
        return self.offset

    def __add__(self, length: int) -> "Addr":
        return Addr(self.offset + length)


def read_null_terminated(memory: wasmtime.Memory, store: wasmtime.Store | wasmtime.Caller, addr: int) -> bytes | None:
    """
    Read bytes from ``addr`` up to (not including) the next NUL byte.

    Returns None if the region ends before a terminator is found.
    """
    end = memory.data_len(store)
    if addr >= end:
        return None

    chunks: list[bytes] = []
    pos = addr
    while pos < end:
        chunk = bytes(memory.read(store, pos, min(pos + _READ_CHUNK, end)))
        nul = chunk.find(b"\0")
        if nul >= 0:
            chunks.append(chunk[:nul])
            return b"".join(chunks)
        chunks.append(chunk)
        pos += len(chunk)
    return None


def read_null_terminated_string(memory: wasmtime.Memory, store: wasmtime.Store | wasmtime.Caller, addr: int) -> str | None:
    """Like read_null_terminated, decoded as UTF-8; None if missing or not valid text."""
    raw = read_null_terminated(memory, store, addr)
    if raw is None:
        return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return None


class GuestMemory:
    """
    Read/write/allocate primitives over the guest's linear memory.

    Attributes:
        rewinds: True when scratch memory is reclaimed by heap pointer rewind
        max_pages: Growth bound in pages (None for unbounded)
    """

    def __init__(
        self,
        store: wasmtime.Store,
        memory: wasmtime.Memory,
        exports: GuestExports,
        rewinds: bool = False,
        max_pages: int | None = None,
    ) -> None:
        self._store = store
        self._memory = memory
        self._exports = exports
        self.rewinds = rewinds
        self.max_pages = max_pages

    @property
    def pages(self) -> int:
        """Current size of the region in pages."""
        return int(self._memory.size(self._store))

    @property
    def size(self) -> int:
        """Current size of the region in bytes."""
        return int(self._memory.data_len(self._store))

    # =========================================================================
    # Allocation
    # =========================================================================

    def allocate(self, length: int) -> tuple[Addr, "GuestView"]:
        """
        Allocate ``length`` bytes with the guest's opa_malloc.

        Returns:
            The address and a writable view over the allocated range. Both
            are invalid after the range is freed or rewound.
        """
        addr = Addr(self._exports.call("opa_malloc", length))
        return addr, GuestView(self, addr, length)

    def free(self, addr: Addr) -> None:
        """Release an allocation with opa_free; a no-op under the rewind discipline."""
        if self.rewinds:
            return
        self._exports.call("opa_free", int(addr))

    def write_bytes(self, data: bytes) -> Addr:
        """Allocate a buffer in the guest and copy ``data`` into it."""
        addr, view = self.allocate(len(data))
        view.write(data)
        return addr

    # =========================================================================
    # Heap pointer
    # =========================================================================

    def heap_ptr(self) -> Addr:
        """Current guest heap pointer."""
        return Addr(self._exports.call("opa_heap_ptr_get"))

    def set_heap_ptr(self, addr: Addr) -> None:
        """Reset the guest heap pointer, discarding everything allocated past it."""
        self._exports.call("opa_heap_ptr_set", int(addr))

    # =========================================================================
    # Raw access
    # =========================================================================

    def write(self, addr: Addr, data: bytes) -> None:
        """Copy ``data`` to ``addr``, growing the region first if needed."""
        self.ensure_capacity(int(addr) + len(data))
        self._memory.write(self._store, data, int(addr))

    def read(self, addr: Addr, length: int) -> bytes:
        """Read ``length`` bytes at ``addr``."""
        return bytes(self._memory.read(self._store, int(addr), int(addr) + length))

    def read_null_terminated(self, addr: Addr) -> bytes | None:
        """Bytes at ``addr`` up to the next NUL, or None if unterminated."""
        return read_null_terminated(self._memory, self._store, int(addr))

    def read_null_terminated_string(self, addr: Addr) -> str | None:
        """Text at ``addr`` up to the next NUL, or None if unterminated or not UTF-8."""
        return read_null_terminated_string(self._memory, self._store, int(addr))

    # =========================================================================
    # Growth
    # =========================================================================

    def ensure_capacity(self, end: int) -> None:
        """Grow the region in whole pages until it holds ``end`` bytes."""
        current = self.size
        if end <= current:
            return
        self.grow(-(-(end - current) // PAGE_SIZE))

    def grow(self, extra_pages: int) -> None:
        """
        Grow the region by ``extra_pages`` pages.

        Raises:
            GuestMemoryError: If the growth would exceed max_pages or the
                backend refuses it
        """
        if self.max_pages is not None and self.pages + extra_pages > self.max_pages:
            raise GuestMemoryError(requested_pages=extra_pages, max_pages=self.max_pages)
        try:
            self._memory.grow(self._store, extra_pages)
        except wasmtime.WasmtimeError as e:
            raise GuestMemoryError(
                requested_pages=extra_pages,
                max_pages=self.max_pages,
                underlying_error=str(e),
            ) from e


class GuestView:
    """
    A fixed-length window onto one guest allocation.

    Reads and writes are bounds-checked against the allocation, not just the
    region, so a view cannot touch a neighbouring allocation.
    """

    def __init__(self, memory: GuestMemory, addr: Addr, length: int) -> None:
        self._memory = memory
        self.addr = addr
        self.length = length

    def __len__(self) -> int:
        return self.length

    def __repr__(self) -> str:
        return f"GuestView(addr={int(self.addr)}, length={self.length})"

    def read(self, offset: int = 0, length: int | None = None) -> bytes:
        """Read ``length`` bytes from ``offset`` (default: to the end of the view)."""
        if length is None:
            length = self.length - offset
        self._check(offset, length)
        return self._memory.read(self.addr + offset, length)

    def write(self, data: bytes, offset: int = 0) -> None:
        """Copy ``data`` into the view at ``offset``."""
        self._check(offset, len(data))
        self._memory.write(self.addr + offset, data)

    def _check(self, offset: int, length: int) -> None:
        if offset < 0 or length < 0 or offset + length > self.length:
            msg = f"Range [{offset}, {offset + length}) outside a {self.length} byte view"
            raise IndexError(msg)
