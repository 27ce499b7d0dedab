"""
Policy runtime for OPA WebAssembly modules.

RuntimeBuilder compiles and instantiates a module compiled with
``opa build -t wasm``; PolicyRuntime evaluates its entrypoints:

    runtime = PolicyRuntime.builder().build(wasm_bytes)
    runtime.set_data({"users": {"alice": {"roles": ["admin"]}}})
    allowed = runtime.eval("example.allow", {"user_id": "alice"}, bool)

Threading:
    A runtime is not reentrant. Use one runtime per thread; concurrent use
    of one runtime raises RuntimeBusyError instead of blocking.

Time limits:
    The core does not interrupt evaluations. Pass a wasmtime Engine
    configured for fuel or epoch interruption with with_engine() if a bound
    is needed.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import wasmtime

from opawasm.config import RuntimeConfig
from opawasm.decision import PolicyDecision, normalize_policy_path
from opawasm.errors import (
    BuildError,
    BundleEmptyError,
    ConfigurationError,
    GuestTrapError,
    MarshalingError,
    NoDataError,
    ResourceLeakError,
    RuntimeBusyError,
    UnknownEntrypointError,
)
from opawasm.log import get_logger
from opawasm.wasm.abi import ABI_MINOR_VERSION_GLOBAL, AbiStrategy, ContextHandle, select_strategy
from opawasm.wasm.context import EvalContext
from opawasm.wasm.exports import GuestExports
from opawasm.wasm.imports import AbortHandler, HostImports, PrintlnHandler, println_logger
from opawasm.wasm.marshal import JsonMarshaler, encode_json
from opawasm.wasm.memory import INITIAL_PAGES, Addr, GuestMemory

if TYPE_CHECKING:
    from opawasm.bundle import Bundle


logger = get_logger("wasm.runtime")


class PolicyRuntime:
    """
    An instantiated policy module.

    Created by RuntimeBuilder; holds the guest memory, the entrypoint table,
    the current dataset address and the ABI strategy.

    Attributes:
        abi_minor_version: ABI minor version exported by the module (0 if absent)
    """

    def __init__(
        self,
        store: wasmtime.Store,
        exports: GuestExports,
        memory: GuestMemory,
        strategy: AbiStrategy,
        entrypoints: dict[str, int],
        abi_minor_version: int,
        imports: HostImports,
    ) -> None:
        self._store = store
        self._exports = exports
        self._memory = memory
        self._strategy = strategy
        self._entrypoints = MappingProxyType(dict(entrypoints))
        self._imports = imports
        self._data_addr: Addr | None = None
        self._lock = threading.Lock()
        self._leak: ResourceLeakError | None = None
        self.abi_minor_version = abi_minor_version

    @staticmethod
    def builder() -> "RuntimeBuilder":
        """Create a new RuntimeBuilder."""
        return RuntimeBuilder()

    def __repr__(self) -> str:
        return (
            f"PolicyRuntime(entrypoints={len(self._entrypoints)}, "
            f"abi_minor_version={self.abi_minor_version}, "
            f"strategy={self._strategy.name!r})"
        )

    # =========================================================================
    # Introspection
    # =========================================================================

    def entrypoints(self) -> Iterator[str]:
        """Iterate over the entrypoint names (``pkg/rule`` form)."""
        return iter(self._entrypoints)

    def entrypoint_id(self, entrypoint: str) -> int:
        """
        Look up an entrypoint id; ``.`` and ``/`` separators are equivalent.

        Raises:
            UnknownEntrypointError: If the module has no such entrypoint
        """
        return self._resolve(entrypoint)[1]

    @property
    def memory_pages(self) -> int:
        """Current size of the guest memory in 64 KiB pages."""
        return self._memory.pages

    @property
    def has_data(self) -> bool:
        """Whether set_data() has been called."""
        return self._data_addr is not None

    # =========================================================================
    # Evaluation
    # =========================================================================

    def set_data(self, value: Any) -> None:
        """
        Set or replace the contextual data document.

        The whole dataset is replaced on every call; there is no patching.

        Raises:
            MarshalingError: If the value cannot be serialized
            RuntimeBusyError: If an evaluation context is open
        """
        self._check_usable()
        with self._exclusive():
            raw = encode_json(value)
            previous, self._data_addr = self._data_addr, None
            self._data_addr = self._strategy.install_data(previous, raw)
            logger.debug("installed %d byte dataset", len(raw))

    def eval(self, entrypoint: str, input_value: Any = None, result_type: Any = Any) -> Any:
        """
        Evaluate a policy entrypoint with the given input.

        Args:
            entrypoint: ``.`` or ``/`` separated policy path
            input_value: The input document
            result_type: Type the decision is decoded into (default: plain JSON)

        Returns:
            The decision document

        Raises:
            UnknownEntrypointError: If the entrypoint does not exist
            NoDataError: If set_data() was never called
            NoResultsError: If the policy produced no result
            MarshalingError: If the input or the result cannot be converted
            GuestTrapError: If the module trapped
        """
        self._check_usable()
        with self._exclusive():
            path, entrypoint_id = self._resolve(entrypoint)
            data_addr = self._require_data()
            return self._strategy.evaluate(path, entrypoint_id, data_addr, input_value, result_type)

    def eval_context(self, input_value: Any = None) -> EvalContext:
        """
        Create an evaluation context for ``input_value``.

        The context holds this runtime until it is destroyed; use it as a
        context manager or call destroy().

        Raises:
            NoDataError: If set_data() was never called
            RuntimeBusyError: If another context is open
        """
        self._check_usable()
        self._acquire()
        try:
            data_addr = self._require_data()
            handle = self._strategy.open_context(data_addr, input_value)
        except BaseException:
            self._lock.release()
            raise
        return EvalContext(self, handle)

    def decide(self, decision: type[PolicyDecision], input_value: Any = None) -> Any:
        """Evaluate a static policy binding (see opawasm.decision)."""
        return self.eval(
            decision.policy_path,
            decision.prepare_input(input_value),
            decision.output_type,
        )

    # =========================================================================
    # Internals shared with EvalContext
    # =========================================================================

    def _context_eval(self, handle: ContextHandle, entrypoint: str, result_type: Any) -> Any:
        self._check_usable()
        path, entrypoint_id = self._resolve(entrypoint)
        return self._strategy.context_eval(handle, path, entrypoint_id, result_type)

    def _release_context(self, handle: ContextHandle) -> None:
        try:
            self._strategy.close_context(handle)
        finally:
            self._lock.release()

    def _poison(self, error: ResourceLeakError) -> None:
        self._leak = error

    def _check_usable(self) -> None:
        if self._leak is not None:
            raise ResourceLeakError(
                message="Policy runtime is unusable after an evaluation context leak",
                underlying_error=self._leak.underlying_error,
            )
        if self._exports.trapped:
            raise GuestTrapError(message="Policy runtime is unusable after a guest trap")

    def _resolve(self, entrypoint: str) -> tuple[str, int]:
        path = normalize_policy_path(entrypoint)
        try:
            return path, self._entrypoints[path]
        except KeyError:
            raise UnknownEntrypointError(
                entrypoint=path,
                available=list(self._entrypoints),
            ) from None

    def _require_data(self) -> Addr:
        if self._data_addr is None:
            raise NoDataError()
        return self._data_addr

    def _acquire(self) -> None:
        if not self._lock.acquire(blocking=False):
            raise RuntimeBusyError()

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        self._acquire()
        try:
            yield
        finally:
            self._lock.release()


class RuntimeBuilder:
    """
    Configures and builds PolicyRuntime instances.

    Usage:
        runtime = (
            RuntimeBuilder()
            .on_println(print)
            .max_memory_pages(512)
            .build(wasm_bytes)
        )
    """

    def __init__(self) -> None:
        self._on_abort: AbortHandler | None = None
        self._on_println: PrintlnHandler | None = None
        self._max_memory_pages: int | None = None
        self._prefer_precompiled = True
        self._engine = wasmtime.Engine()

    @classmethod
    def from_config(cls, config: RuntimeConfig) -> "RuntimeBuilder":
        """
        Create a builder from a RuntimeConfig.

        The config's log_level is not applied here; the process entry point
        applies it (see opawasm.log.setup_logging).
        """
        return (
            cls()
            .on_println(println_logger(config.guest_log_level_number))
            .max_memory_pages(config.max_memory_pages)
            .prefer_precompiled(config.prefer_precompiled)
        )

    # =========================================================================
    # Options
    # =========================================================================

    def on_abort(self, handler: AbortHandler) -> "RuntimeBuilder":
        """Set the handler for opa_abort. The default raises GuestAbortError."""
        self._on_abort = handler
        return self

    def on_println(self, handler: PrintlnHandler) -> "RuntimeBuilder":
        """Set the handler for the Rego print() builtin. The default logs at INFO."""
        self._on_println = handler
        return self

    def max_memory_pages(self, pages: int | None) -> "RuntimeBuilder":
        """Bound the guest memory growth (None for unbounded)."""
        if pages is not None and pages < INITIAL_PAGES:
            raise ConfigurationError(
                message=f"max_memory_pages must be at least {INITIAL_PAGES}, got {pages}",
            )
        self._max_memory_pages = pages
        return self

    def prefer_precompiled(self, enabled: bool) -> "RuntimeBuilder":
        """Whether build_from_bundle() uses a bundle's precompiled module."""
        self._prefer_precompiled = enabled
        return self

    def with_engine(self, engine: wasmtime.Engine) -> "RuntimeBuilder":
        """Use an existing wasmtime Engine instead of a fresh one."""
        self._engine = engine
        return self

    @property
    def engine(self) -> wasmtime.Engine:
        """The wasmtime Engine modules are compiled with."""
        return self._engine

    # =========================================================================
    # Build
    # =========================================================================

    def build(self, module: bytes | str) -> PolicyRuntime:
        """
        Compile and instantiate a policy module.

        Args:
            module: WASM binary, or WebAssembly text as a str

        Raises:
            BuildError: If the module is invalid or cannot be initialized
        """
        try:
            compiled = wasmtime.Module(self._engine, module)
        except wasmtime.WasmtimeError as e:
            raise BuildError(stage="compile", underlying_error=str(e)) from e
        return self._instantiate(compiled)

    def build_precompiled(self, serialized: bytes) -> PolicyRuntime:
        """
        Instantiate a module serialized by wasmtime (``Module.serialize``).

        Only load artifacts from a trusted source compiled for this
        engine configuration.
        """
        return self._instantiate(self._deserialize(serialized))

    def build_from_bundle(self, bundle: "Bundle") -> PolicyRuntime:
        """
        Build from a bundle's precompiled module or its first WASM policy.

        Raises:
            BundleEmptyError: If the bundle has no usable module
            BuildError: If the selected module cannot be built
        """
        if self._prefer_precompiled and bundle.precompiled is not None:
            try:
                compiled = self._deserialize(bundle.precompiled)
            except BuildError as e:
                if not bundle.wasm_policies:
                    raise
                logger.warning("precompiled module unusable, falling back to WASM: %s", e.underlying_error)
            else:
                return self._instantiate(compiled)

        if not bundle.wasm_policies:
            raise BundleEmptyError()
        return self.build(bundle.wasm_policies[0].bytes)

    def _deserialize(self, serialized: bytes) -> wasmtime.Module:
        try:
            return wasmtime.Module.deserialize(self._engine, serialized)
        except wasmtime.WasmtimeError as e:
            raise BuildError(stage="deserialize", underlying_error=str(e)) from e

    def _instantiate(self, module: wasmtime.Module) -> PolicyRuntime:
        store = wasmtime.Store(self._engine)
        try:
            memory = wasmtime.Memory(
                store,
                wasmtime.MemoryType(wasmtime.Limits(INITIAL_PAGES, self._max_memory_pages)),
            )
        except wasmtime.WasmtimeError as e:
            raise BuildError(stage="memory", underlying_error=str(e)) from e

        linker = wasmtime.Linker(self._engine)
        imports = HostImports(memory, self._on_abort, self._on_println)
        imports.define(linker, store)

        try:
            instance = linker.instantiate(store, module)
        except (wasmtime.Trap, wasmtime.WasmtimeError) as e:
            raise BuildError(stage="instantiate", underlying_error=str(e)) from e

        exports = GuestExports(store, instance)
        abi_minor_version = exports.global_value(ABI_MINOR_VERSION_GLOBAL, 0)
        strategy_cls = select_strategy(abi_minor_version)
        exports.require(("entrypoints", *strategy_cls.required_exports))
        logger.debug("ABI minor version %d, using %s strategy", abi_minor_version, strategy_cls.name)

        guest_memory = GuestMemory(
            store,
            memory,
            exports,
            rewinds=strategy_cls.rewinds,
            max_pages=self._max_memory_pages,
        )
        marshaler = JsonMarshaler(guest_memory, exports)

        try:
            table_addr = Addr(exports.call("entrypoints"))
            entrypoints = marshaler.read_json(table_addr, dict[str, int])
            strategy = strategy_cls(exports, guest_memory, marshaler)
            strategy.initialize()
        except (GuestTrapError, MarshalingError) as e:
            raise BuildError(stage="initialize", underlying_error=e.message) from e

        logger.debug("loaded %d entrypoints", len(entrypoints))
        return PolicyRuntime(
            store=store,
            exports=exports,
            memory=guest_memory,
            strategy=strategy,
            entrypoints=entrypoints,
            abi_minor_version=abi_minor_version,
            imports=imports,
        )
