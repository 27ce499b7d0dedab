"""
Client for a remote OPA server's REST API.

Covers the routes an application needs next to local evaluation:
- /health: health check
- /v1/policies/{id}: create, read, list and delete policy modules
- /v1/data/{path}: write and delete documents, query decisions

Decisions use the same PolicyDecision bindings as the local runtime:

    with RemoteClient("http://localhost:8181") as opa:
        decision = opa.decide(ProjectPermissions, ProjectInput(...))

Design Decisions:
    - Synchronous httpx client; pass your own httpx.Client to configure
      timeouts, auth or a transport
    - Any transport failure or non-2xx status raises RemoteError
    - Dotted policy paths (``pkg.rule``) are sent as ``pkg/rule``
"""

from typing import Any, Generic, TypeVar
from uuid import UUID

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from opawasm.decision import PolicyDecision, normalize_policy_path, type_name
from opawasm.errors import MarshalingError, RemoteError
from opawasm.log import get_logger
from opawasm.wasm.marshal import encode_json


logger = get_logger("http")

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 30


# =============================================================================
# Response Models
# =============================================================================


class Decision(BaseModel, Generic[T]):
    """
    A decision returned by the server.

    Attributes:
        result: The decision document (None if the decision is undefined)
        decision_id: Server-assigned id, when decision logging is enabled
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    result: T | None = None
    decision_id: UUID | None = None


class Policy(BaseModel):
    """
    A policy module stored on the server.

    Attributes:
        id: Policy identifier
        raw: Rego source
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1, description="Policy identifier")
    raw: str = Field(default="", description="Rego source code")


class _PolicyResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    result: Policy


class _PolicyListResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    result: list[Policy] = Field(default_factory=list)


# =============================================================================
# Client
# =============================================================================


class RemoteClient:
    """
    REST client for an OPA server.

    Attributes:
        base_url: Server base URL (e.g. ``http://localhost:8181``)
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.Client | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None

    def __enter__(self) -> "RemoteClient":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    def close(self) -> None:
        """Close the underlying httpx client if this instance created it."""
        if self._owns_client:
            self._client.close()

    # =========================================================================
    # Health API
    # =========================================================================

    def health(self) -> None:
        """
        Check that the server is up.

        Raises:
            RemoteError: If the server is unreachable or unhealthy
        """
        self._request("GET", "/health")

    # =========================================================================
    # Policy API
    # =========================================================================

    def set_policy(self, policy: Policy) -> None:
        """Create or replace a policy module."""
        self._request(
            "PUT",
            f"/v1/policies/{policy.id}",
            content=policy.raw.encode("utf-8"),
            headers={"Content-Type": "text/plain"},
        )

    def get_policy(self, policy_id: str) -> Policy:
        """Fetch one policy module."""
        response = self._request("GET", f"/v1/policies/{policy_id}")
        return self._parse(response, _PolicyResponse).result

    def list_policies(self) -> list[Policy]:
        """List all policy modules."""
        response = self._request("GET", "/v1/policies")
        return self._parse(response, _PolicyListResponse).result

    def delete_policy(self, policy_id: str) -> None:
        """Delete a policy module."""
        self._request("DELETE", f"/v1/policies/{policy_id}")

    # =========================================================================
    # Data API
    # =========================================================================

    def set_document(self, path: str, document: Any) -> None:
        """Create or overwrite the document at ``path``."""
        self._request(
            "PUT",
            f"/v1/data/{normalize_policy_path(path).lstrip('/')}",
            content=encode_json(document),
            headers={"Content-Type": "application/json"},
        )

    def delete_document(self, path: str) -> None:
        """Delete the document at ``path``."""
        self._request("DELETE", f"/v1/data/{normalize_policy_path(path).lstrip('/')}")

    def get_decision(self, policy: str, input_value: Any = None, result_type: Any = Any) -> Decision[Any]:
        """
        Query a decision with an input document.

        Args:
            policy: ``.`` or ``/`` separated policy path
            input_value: The input document
            result_type: Type the decision document is decoded into

        Returns:
            The Decision with its result decoded into ``result_type``

        Raises:
            RemoteError: If the request fails
            MarshalingError: If the input cannot be encoded or the result
                does not match ``result_type``
        """
        body = b'{"input":' + encode_json(input_value) + b"}"
        response = self._request(
            "POST",
            f"/v1/data/{normalize_policy_path(policy).lstrip('/')}",
            content=body,
            headers={"Content-Type": "application/json"},
        )
        return self._parse(response, Decision[result_type])

    def decide(self, decision: type[PolicyDecision], input_value: Any = None) -> Decision[Any]:
        """Query a static policy binding (see opawasm.decision)."""
        return self.get_decision(
            decision.policy_path,
            decision.prepare_input(input_value),
            decision.output_type,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteError(
                url=url,
                underlying_error=f"Request timed out: {e}",
            ) from e
        except httpx.RequestError as e:
            raise RemoteError(url=url, underlying_error=str(e)) from e

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RemoteError(
                url=url,
                status_code=response.status_code,
                underlying_error=f"HTTP {response.status_code}: {response.text[:200]}",
            ) from e
        return response

    @staticmethod
    def _parse(response: httpx.Response, model: type[BaseModel]) -> Any:
        try:
            return model.model_validate_json(response.content, strict=True)
        except ValidationError as e:
            raise MarshalingError(
                direction="decode",
                target_type=type_name(model),
                underlying_error=str(e),
            ) from e
