"""
Unit tests for the remote OPA client.

Tests cover:
- Health checks
- Policy API requests (PUT/GET/LIST/DELETE)
- Data API requests and decision parsing
- Transport and status errors
"""

import json
from collections.abc import Callable
from uuid import UUID

import httpx
import pytest

from opawasm.decision import PolicyDecision
from opawasm.errors import MarshalingError, RemoteError
from opawasm.http import Policy, RemoteClient


BASE_URL = "http://opa.test"
DECISION_ID = "8b1e1c67-46a8-4a6d-9d43-5f0f0f6f3a11"

Handler = Callable[[httpx.Request], httpx.Response]


def make_client(handler: Handler) -> RemoteClient:
    """A RemoteClient whose requests go to ``handler``."""
    return RemoteClient(BASE_URL, client=httpx.Client(transport=httpx.MockTransport(handler)))


class Recorder:
    """Transport handler that records requests and returns a fixed response."""

    def __init__(self, status_code: int = 200, body: object = None) -> None:
        self.status_code = status_code
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.body is None:
            return httpx.Response(self.status_code)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


class AllowDecision(PolicyDecision):
    """Binding for example.allow."""

    policy_path = "example.allow"
    output_type = bool


# =============================================================================
# Health
# =============================================================================


class TestHealth:
    """Tests for RemoteClient.health."""

    def test_healthy(self) -> None:
        """A 200 response passes."""
        recorder = Recorder(body={})
        make_client(recorder).health()
        assert recorder.last.method == "GET"
        assert recorder.last.url.path == "/health"

    def test_unhealthy(self) -> None:
        """A 500 response raises RemoteError with the status."""
        with pytest.raises(RemoteError) as exc_info:
            make_client(Recorder(status_code=500)).health()
        assert exc_info.value.status_code == 500
        assert exc_info.value.url == f"{BASE_URL}/health"


# =============================================================================
# Policy API
# =============================================================================


class TestPolicyApi:
    """Tests for the /v1/policies routes."""

    def test_set_policy(self) -> None:
        """Policies are uploaded as plain text."""
        recorder = Recorder(body={})
        make_client(recorder).set_policy(Policy(id="example", raw="package example"))

        request = recorder.last
        assert request.method == "PUT"
        assert request.url.path == "/v1/policies/example"
        assert request.headers["Content-Type"] == "text/plain"
        assert request.content == b"package example"

    def test_get_policy(self) -> None:
        """A policy is parsed from the result wrapper."""
        recorder = Recorder(body={"result": {"id": "example", "raw": "package example", "ast": {}}})
        policy = make_client(recorder).get_policy("example")
        assert policy == Policy(id="example", raw="package example")
        assert recorder.last.url.path == "/v1/policies/example"

    def test_list_policies(self) -> None:
        """All policies are returned."""
        recorder = Recorder(body={"result": [{"id": "a", "raw": "package a"}, {"id": "b"}]})
        policies = make_client(recorder).list_policies()
        assert [policy.id for policy in policies] == ["a", "b"]
        assert policies[1].raw == ""

    def test_delete_policy(self) -> None:
        """Deleting uses DELETE on the policy path."""
        recorder = Recorder(body={})
        make_client(recorder).delete_policy("example")
        assert recorder.last.method == "DELETE"
        assert recorder.last.url.path == "/v1/policies/example"

    def test_missing_policy(self) -> None:
        """A 404 raises RemoteError."""
        with pytest.raises(RemoteError) as exc_info:
            make_client(Recorder(status_code=404, body={"code": "resource_not_found"})).get_policy("nope")
        assert exc_info.value.status_code == 404
        assert "resource_not_found" in exc_info.value.underlying_error


# =============================================================================
# Data API
# =============================================================================


class TestDataApi:
    """Tests for the /v1/data routes."""

    def test_set_document(self) -> None:
        """Documents are sent as JSON; dotted paths become slashes."""
        recorder = Recorder(body={})
        make_client(recorder).set_document("users.alice", {"roles": ["admin"]})

        request = recorder.last
        assert request.method == "PUT"
        assert request.url.path == "/v1/data/users/alice"
        assert json.loads(request.content) == {"roles": ["admin"]}

    def test_delete_document(self) -> None:
        """Deleting uses DELETE on the data path."""
        recorder = Recorder(body={})
        make_client(recorder).delete_document("users/alice")
        assert recorder.last.method == "DELETE"
        assert recorder.last.url.path == "/v1/data/users/alice"

    def test_get_decision(self) -> None:
        """Decisions carry the typed result and the decision id."""
        recorder = Recorder(body={"result": True, "decision_id": DECISION_ID})
        decision = make_client(recorder).get_decision("example.allow", {"user_id": "alice"}, bool)

        assert decision.result is True
        assert decision.decision_id == UUID(DECISION_ID)
        assert recorder.last.method == "POST"
        assert recorder.last.url.path == "/v1/data/example/allow"
        assert json.loads(recorder.last.content) == {"input": {"user_id": "alice"}}

    def test_undefined_decision(self) -> None:
        """A response without a result is an undefined decision."""
        decision = make_client(Recorder(body={})).get_decision("example/allow")
        assert decision.result is None
        assert decision.decision_id is None

    def test_decide_binding(self) -> None:
        """decide() uses the binding's path and output type."""
        recorder = Recorder(body={"result": False})
        decision = make_client(recorder).decide(AllowDecision, {"user_id": "bob"})
        assert decision.result is False
        assert recorder.last.url.path == "/v1/data/example/allow"

    def test_result_type_mismatch(self) -> None:
        """A result that does not fit the type raises MarshalingError."""
        with pytest.raises(MarshalingError):
            make_client(Recorder(body={"result": "yes"})).get_decision("example/allow", {}, int)

    def test_result_not_coerced(self) -> None:
        """A numeric result is not accepted for a boolean decision."""
        with pytest.raises(MarshalingError):
            make_client(Recorder(body={"result": 1})).decide(AllowDecision, {})

    def test_unserializable_input(self) -> None:
        """Inputs are encoded before any request is made."""
        recorder = Recorder(body={})
        with pytest.raises(MarshalingError):
            make_client(recorder).get_decision("example/allow", {"x": object()})
        assert recorder.requests == []


# =============================================================================
# Transport
# =============================================================================


class TestTransportErrors:
    """Tests for network failures."""

    def test_connect_error(self) -> None:
        """Connection failures raise RemoteError without a status."""

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RemoteError) as exc_info:
            make_client(refuse).health()
        assert exc_info.value.status_code is None
        assert "connection refused" in exc_info.value.underlying_error

    def test_timeout(self) -> None:
        """Timeouts raise RemoteError."""

        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(RemoteError) as exc_info:
            make_client(slow).health()
        assert "timed out" in exc_info.value.underlying_error

    def test_context_manager_keeps_injected_client(self) -> None:
        """An injected httpx client is not closed by the RemoteClient."""
        client = httpx.Client(transport=httpx.MockTransport(Recorder(body={})))
        with RemoteClient(BASE_URL, client=client) as opa:
            opa.health()
        assert client.is_closed is False
        client.close()
