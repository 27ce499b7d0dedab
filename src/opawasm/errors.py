"""
Exception hierarchy for opawasm.

All opawasm exceptions inherit from OpaWasmError, allowing callers to catch
all opawasm-specific exceptions with a single except clause.

Exception Categories:
    - BuildError: The policy module could not be compiled or instantiated
    - ConfigurationError: The caller used the runtime incorrectly (no data,
      unknown entrypoint, runtime busy, destroyed context)
    - MarshalingError: A value could not be moved across the guest boundary
    - GuestTrapError: The policy module aborted or trapped
    - ResourceLeakError: An evaluation context could not release guest memory
    - BundleError: A policy bundle could not be read
    - RemoteError: The remote decision service returned an error
    - ConfigFileError: A runtime configuration file is invalid

Design Principles:
    - All errors have error codes for programmatic handling
    - All errors include context (entrypoint, export, path where applicable)
    - Configuration errors never modify the runtime's persistent state
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Build errors: 1xxx
ERROR_BUILD_FAILED = 1001
ERROR_BUILD_MISSING_EXPORT = 1002

# Configuration errors: 2xxx
ERROR_CONFIG_INVALID = 2001
ERROR_CONFIG_NO_DATA = 2002
ERROR_CONFIG_UNKNOWN_ENTRYPOINT = 2003
ERROR_CONFIG_RUNTIME_BUSY = 2004
ERROR_CONFIG_CONTEXT_DESTROYED = 2005

# Marshaling errors: 3xxx
ERROR_MARSHAL_FAILED = 3001
ERROR_MARSHAL_NO_RESULTS = 3002

# Guest errors: 4xxx
ERROR_GUEST_TRAP = 4001
ERROR_GUEST_ABORT = 4002
ERROR_GUEST_MEMORY = 4003

# Teardown errors: 5xxx
ERROR_RESOURCE_LEAK = 5001

# Bundle errors: 6xxx
ERROR_BUNDLE_INVALID = 6001
ERROR_BUNDLE_MANIFEST = 6002
ERROR_BUNDLE_DATA = 6003
ERROR_BUNDLE_EMPTY = 6004

# Remote service errors: 7xxx
ERROR_REMOTE_REQUEST = 7001

# Configuration file errors: 8xxx
ERROR_CONFIG_FILE = 8001


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class OpaWasmError(Exception):
    """
    Base exception for all opawasm errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Build Errors
# =============================================================================


@dataclass
class BuildError(OpaWasmError):
    """
    Raised when a policy module cannot be compiled, linked or initialized.

    Build errors are fatal for the module in question and are never retried.

    Attributes:
        stage: Which build step failed (compile, instantiate, initialize)
        underlying_error: Text of the backend error, if any
    """

    stage: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to build policy module ({self.stage}): {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_BUILD_FAILED
        self.context.update({
            "stage": self.stage,
            "underlying_error": self.underlying_error,
        })


@dataclass
class MissingExportError(BuildError):
    """Raised when the policy module does not export a required symbol."""

    exports: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Policy module is missing required exports: {', '.join(self.exports)}"
        if self.code == 0:
            self.code = ERROR_BUILD_MISSING_EXPORT
        if not self.suggestion:
            self.suggestion = "Rebuild the policy with `opa build -t wasm`"
        if not self.stage:
            self.stage = "initialize"
        super().__post_init__()
        self.context["exports"] = self.exports


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigurationError(OpaWasmError):
    """
    Base class for caller-correctable usage errors.

    Raised before any guest call is made, so the runtime's data and
    entrypoint table are unchanged.
    """

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID


@dataclass
class NoDataError(ConfigurationError):
    """Raised when evaluating before any data document was set."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "No data provided, all decisions would be undefined"
        if self.code == 0:
            self.code = ERROR_CONFIG_NO_DATA
        if not self.suggestion:
            self.suggestion = "Call set_data() at least once before evaluating, e.g. set_data({})"
        super().__post_init__()


@dataclass
class UnknownEntrypointError(ConfigurationError):
    """Raised when an entrypoint is not present in the module's table."""

    entrypoint: str = ""
    available: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Unknown entrypoint: {self.entrypoint}"
        if self.code == 0:
            self.code = ERROR_CONFIG_UNKNOWN_ENTRYPOINT
        if not self.suggestion and self.available:
            self.suggestion = f"Available entrypoints: {', '.join(sorted(self.available))}"
        super().__post_init__()
        self.context["entrypoint"] = self.entrypoint


@dataclass
class RuntimeBusyError(ConfigurationError):
    """Raised when a runtime is used while an evaluation context holds it."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "Policy runtime is in use by a live evaluation context"
        if self.code == 0:
            self.code = ERROR_CONFIG_RUNTIME_BUSY
        if not self.suggestion:
            self.suggestion = "Destroy the open context first, or use one runtime per thread"
        super().__post_init__()


@dataclass
class ContextDestroyedError(ConfigurationError):
    """Raised when an evaluation context is used after it was destroyed."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "Evaluation context has already been destroyed"
        if self.code == 0:
            self.code = ERROR_CONFIG_CONTEXT_DESTROYED
        super().__post_init__()


# =============================================================================
# Marshaling Errors
# =============================================================================


@dataclass
class MarshalingError(OpaWasmError):
    """
    Raised when a value cannot be serialized into or decoded from the guest.

    Attributes:
        direction: "encode" (host to guest) or "decode" (guest to host)
        target_type: Name of the type being produced or consumed
        underlying_error: Text of the serializer/validator error
    """

    direction: str = ""
    target_type: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to {self.direction} {self.target_type}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_MARSHAL_FAILED
        self.context.update({
            "direction": self.direction,
            "target_type": self.target_type,
            "underlying_error": self.underlying_error,
        })


@dataclass
class NoResultsError(MarshalingError):
    """Raised when an evaluation produced an empty result set."""

    entrypoint: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"The query produced no results: {self.entrypoint}"
        if self.code == 0:
            self.code = ERROR_MARSHAL_NO_RESULTS
        if not self.direction:
            self.direction = "decode"
        super().__post_init__()
        self.context["entrypoint"] = self.entrypoint


# =============================================================================
# Guest Errors
# =============================================================================


@dataclass
class GuestTrapError(OpaWasmError):
    """
    Raised when the policy module traps during a call.

    The runtime is unusable afterwards and should be rebuilt.

    Attributes:
        export: Name of the guest export that was being called
        underlying_error: Text of the trap reported by the backend
    """

    export: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Policy module trapped in {self.export}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_GUEST_TRAP
        if not self.suggestion:
            self.suggestion = "Discard this runtime and build a new one"
        self.context.update({
            "export": self.export,
            "underlying_error": self.underlying_error,
        })


@dataclass
class GuestAbortError(GuestTrapError):
    """Raised by the default abort handler when the module calls opa_abort."""

    guest_message: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"OPA abort was called: {self.guest_message}"
        if self.code == 0:
            self.code = ERROR_GUEST_ABORT
        super().__post_init__()
        self.context["guest_message"] = self.guest_message


@dataclass
class GuestMemoryError(GuestTrapError):
    """Raised when the linear memory cannot grow to fit a write."""

    requested_pages: int = 0
    max_pages: int | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Cannot grow guest memory by {self.requested_pages} pages"
                f" (max: {self.max_pages if self.max_pages is not None else 'unbounded'})"
            )
        if self.code == 0:
            self.code = ERROR_GUEST_MEMORY
        if not self.suggestion:
            self.suggestion = "Increase max_memory_pages or reduce the input size"
        super().__post_init__()
        self.context.update({
            "requested_pages": self.requested_pages,
            "max_pages": self.max_pages,
        })


# =============================================================================
# Teardown Errors
# =============================================================================


@dataclass
class ResourceLeakError(OpaWasmError):
    """
    Raised when an evaluation context fails to release its guest memory.

    The guest's allocator state is unknown after this error; the runtime
    refuses further work.
    """

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to release evaluation context: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_RESOURCE_LEAK
        if not self.suggestion:
            self.suggestion = "Discard this runtime and build a new one"
        self.context["underlying_error"] = self.underlying_error


# =============================================================================
# Bundle Errors
# =============================================================================


@dataclass
class BundleError(OpaWasmError):
    """
    Base class for bundle loading errors.

    Attributes:
        bundle_path: Path of the bundle, when loaded from a file
        underlying_error: Text of the archive or parser error
    """

    bundle_path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid bundle: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_BUNDLE_INVALID
        self.context.update({
            "bundle_path": self.bundle_path,
            "underlying_error": self.underlying_error,
        })


@dataclass
class BundleManifestError(BundleError):
    """Raised when the bundle's /.manifest is not a valid manifest."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid manifest: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_BUNDLE_MANIFEST
        super().__post_init__()


@dataclass
class BundleDataError(BundleError):
    """Raised when the bundle's /data.json is not valid JSON."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid data file: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_BUNDLE_DATA
        super().__post_init__()


@dataclass
class BundleEmptyError(BundleError):
    """Raised when a bundle carries no module the runtime can build."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "The bundle must contain at least one WASM module"
        if self.code == 0:
            self.code = ERROR_BUNDLE_EMPTY
        if not self.suggestion:
            self.suggestion = "Build the bundle with `opa build -t wasm -e <entrypoint>`"
        super().__post_init__()


# =============================================================================
# Remote Service Errors
# =============================================================================


@dataclass
class RemoteError(OpaWasmError):
    """
    Raised when a request to a remote policy server fails.

    Attributes:
        url: Request URL
        status_code: HTTP status, if a response was received
        underlying_error: Text of the transport or status error
    """

    url: str = ""
    status_code: int | None = None
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Request to {self.url} failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_REMOTE_REQUEST
        self.context.update({
            "url": self.url,
            "status_code": self.status_code,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Configuration File Errors
# =============================================================================


@dataclass
class ConfigFileError(OpaWasmError):
    """Raised when a runtime configuration file cannot be loaded."""

    config_path: str = ""
    validation_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration {self.config_path}: {self.validation_error}"
        if self.code == 0:
            self.code = ERROR_CONFIG_FILE
        self.context.update({
            "config_path": self.config_path,
            "validation_error": self.validation_error,
        })
