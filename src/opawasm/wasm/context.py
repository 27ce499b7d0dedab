"""
Evaluation contexts.

An EvalContext binds one input to a runtime so several entrypoints can be
evaluated without marshaling the input again:

    with runtime.eval_context({"user_id": "alice"}) as ctx:
        allowed = ctx.eval("example.allow", bool)
        roles = ctx.eval("example.roles", list[str])

A context holds its runtime exclusively; the runtime rejects other work
until the context is destroyed. Release happens in one place (_teardown),
reached from destroy(), from leaving a ``with`` block, and from the
finalizer of a context that was never destroyed.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any

from opawasm.errors import ContextDestroyedError, ResourceLeakError
from opawasm.log import get_logger
from opawasm.wasm.abi import ContextHandle

if TYPE_CHECKING:
    from opawasm.wasm.runtime import PolicyRuntime


logger = get_logger("wasm.context")


class ContextState(str, Enum):
    """Lifecycle of an evaluation context."""

    CREATED = "created"
    EVALUATING = "evaluating"
    DESTROYED = "destroyed"


class EvalContext:
    """
    A reusable evaluation session bound to one input value.

    Created by PolicyRuntime.eval_context(); not constructed directly.

    Attributes:
        state: Current lifecycle state
    """

    def __init__(self, runtime: "PolicyRuntime", handle: ContextHandle) -> None:
        self._runtime = runtime
        self._handle = handle
        self.state = ContextState.CREATED

    def __enter__(self) -> "EvalContext":
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """Release the context; a release failure is suppressed if already unwinding."""
        self._teardown(unwinding=exc_type is not None)

    def __del__(self) -> None:
        if getattr(self, "state", ContextState.DESTROYED) is ContextState.DESTROYED:
            return
        try:
            self._teardown(unwinding=False)
        except ResourceLeakError as e:
            logger.critical("evaluation context leaked guest memory: %s", e)

    @property
    def destroyed(self) -> bool:
        """Whether the context has been released."""
        return self.state is ContextState.DESTROYED

    def eval(self, entrypoint: str, result_type: Any = Any) -> Any:
        """
        Evaluate an entrypoint against this context's input.

        Args:
            entrypoint: ``.`` or ``/`` separated policy path
            result_type: Type the decision is decoded into

        Returns:
            The decision document

        Raises:
            ContextDestroyedError: If the context was destroyed
            UnknownEntrypointError: If the entrypoint does not exist
            NoResultsError: If the evaluation produced no result
        """
        if self.destroyed:
            raise ContextDestroyedError()
        self.state = ContextState.EVALUATING
        return self._runtime._context_eval(self._handle, entrypoint, result_type)

    def destroy(self) -> None:
        """
        Release the context's guest memory and the runtime.

        Raises:
            ContextDestroyedError: If the context was already destroyed
            ResourceLeakError: If the guest memory could not be released
        """
        if self.destroyed:
            raise ContextDestroyedError()
        self._teardown(unwinding=False)

    def _teardown(self, unwinding: bool) -> None:
        if self.destroyed:
            return
        self.state = ContextState.DESTROYED
        try:
            self._runtime._release_context(self._handle)
        except Exception as e:
            if unwinding:
                logger.warning("suppressed context release failure while unwinding: %s", e)
                return
            leak = ResourceLeakError(underlying_error=str(e))
            self._runtime._poison(leak)
            raise leak from e
