"""
Strongly-typed policy decision bindings.

A PolicyDecision subclass ties a policy path to the input and output types
of that decision, so call sites do not repeat the path string:

    class ProjectPermissions(PolicyDecision):
        policy_path = "example.project_permissions"
        input_type = ProjectInput
        output_type = set[str]

    permissions = runtime.decide(ProjectPermissions, ProjectInput(...))

The same binding works with the local WASM runtime and the remote client.
"""

from typing import Any, ClassVar

from pydantic import TypeAdapter, ValidationError

from opawasm.errors import MarshalingError


def normalize_policy_path(path: str) -> str:
    """Convert a dotted policy path (``pkg.rule``) to the slash form (``pkg/rule``)."""
    return path.replace(".", "/")


def type_name(tp: Any) -> str:
    """Readable name of a type annotation for error messages."""
    return getattr(tp, "__name__", None) or repr(tp)


class PolicyDecision:
    """
    Base class for static policy bindings.

    Attributes:
        policy_path: ``.`` or ``/`` separated path to the decision
        input_type: Type the input is validated against (Any skips validation)
        output_type: Type the decision document is decoded into
    """

    policy_path: ClassVar[str] = ""
    input_type: ClassVar[Any] = Any
    output_type: ClassVar[Any] = Any

    def __init_subclass__(cls, abstract: bool = False, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if abstract:
            return
        if not isinstance(cls.policy_path, str) or not cls.policy_path.strip():
            msg = f"{cls.__name__} must define a non-empty policy_path"
            raise TypeError(msg)

    @classmethod
    def entrypoint(cls) -> str:
        """The normalized (slash separated) policy path."""
        return normalize_policy_path(cls.policy_path)

    @classmethod
    def prepare_input(cls, value: Any) -> Any:
        """
        Validate an input value against input_type.

        Raises:
            MarshalingError: If the value does not match input_type
        """
        if cls.input_type is Any:
            return value
        try:
            return TypeAdapter(cls.input_type).validate_python(value)
        except ValidationError as e:
            raise MarshalingError(
                direction="encode",
                target_type=type_name(cls.input_type),
                underlying_error=str(e),
            ) from e
