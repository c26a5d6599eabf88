"""
Unit tests for the gateway pipeline.

Tests cover:
- Target, header and body parsing
- Decision and forward audit records
- Deny / allow / unknown tool paths
- Forward cancellation when the caller disconnects
"""

import asyncio
import json
import threading
from pathlib import Path

import httpx
import pytest

from conftest import RecordingAuditSink
from gatekeeper.audit import fingerprint_params
from gatekeeper.errors import (
    ClientDisconnectedError,
    ForwardError,
    InvalidBodyError,
    InvalidTargetError,
    MissingAgentError,
    PolicyViolationError,
    UnknownToolError,
)
from gatekeeper.gateway.forwarder import ToolForwarder
from gatekeeper.gateway.pipeline import GatewayPipeline, parse_body, parse_target
from gatekeeper.policy import PolicyEngine


# =============================================================================
# Parsing
# =============================================================================


class TestParseTarget:
    """Tests for /tools/{tool}/{action} parsing."""

    def test_valid(self) -> None:
        assert parse_target("payments/create") == ("payments", "create")

    @pytest.mark.parametrize(
        "target",
        ["", "payments", "payments/", "/create", "payments/create/extra", "a//b", "/"],
    )
    def test_invalid(self, target: str) -> None:
        with pytest.raises(InvalidTargetError) as exc_info:
            parse_target(target)
        assert exc_info.value.http_status == 400
        assert exc_info.value.error_kind == "InvalidPath"


class TestParseBody:
    """Tests for body parsing."""

    def test_empty_body(self) -> None:
        assert parse_body(b"") == {}

    def test_object(self) -> None:
        assert parse_body(b'{"amount": 10, "currency": "USD"}') == {"amount": 10, "currency": "USD"}

    @pytest.mark.parametrize(
        "body",
        [b"{not json", b"[1, 2]", b'"text"', b"42", b"null", b'{"amount": NaN}', b'{"a": Infinity}'],
    )
    def test_rejected(self, body: bytes) -> None:
        with pytest.raises(InvalidBodyError) as exc_info:
            parse_body(body)
        assert exc_info.value.error_kind == "InvalidJSON"

    def test_invalid_utf8(self) -> None:
        with pytest.raises(InvalidBodyError):
            parse_body(b'{"path": "\xff"}')


# =============================================================================
# Pipeline
# =============================================================================


class Downstream:
    """Mock tool service that records what it receives."""

    def __init__(self, status_code: int = 200, delay: float = 0.0) -> None:
        self.status_code = status_code
        self.delay = delay
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        return httpx.Response(self.status_code, json={"tool": request.url.host})


@pytest.fixture
def engine(policies_dir: Path) -> PolicyEngine:
    engine = PolicyEngine(policies_dir, watch=False)
    engine.start()
    return engine


def make_pipeline(
    engine: PolicyEngine,
    audit: RecordingAuditSink,
    downstream: Downstream,
    tools: dict[str, str] | None = None,
) -> GatewayPipeline:
    client = httpx.AsyncClient(transport=httpx.MockTransport(downstream))
    forwarder = ToolForwarder(
        tools or {"payments": "http://payments.test", "files": "http://files.test"},
        client=client,
    )
    return GatewayPipeline(engine, audit, forwarder, disconnect_poll_seconds=0.01)


def handle(pipeline: GatewayPipeline, target: str, headers: dict, body: bytes, is_disconnected=None):
    async def go():
        try:
            return await pipeline.handle(target, headers, body, is_disconnected=is_disconnected)
        finally:
            await pipeline.forwarder.aclose()

    return asyncio.run(go())


FINANCE = {"X-Agent-ID": "finance-agent"}


class TestRejectedBeforeEvaluation:
    """Malformed requests never reach the engine or the audit sink."""

    def test_bad_target(self, engine: PolicyEngine, recording_audit: RecordingAuditSink) -> None:
        pipeline = make_pipeline(engine, recording_audit, Downstream())
        with pytest.raises(InvalidTargetError):
            handle(pipeline, "payments", FINANCE, b"{}")
        assert recording_audit.decisions == []

    def test_missing_agent(self, engine: PolicyEngine, recording_audit: RecordingAuditSink) -> None:
        pipeline = make_pipeline(engine, recording_audit, Downstream())
        with pytest.raises(MissingAgentError):
            handle(pipeline, "payments/create", {}, b"{}")
        assert recording_audit.decisions == []

    def test_empty_agent(self, engine: PolicyEngine, recording_audit: RecordingAuditSink) -> None:
        pipeline = make_pipeline(engine, recording_audit, Downstream())
        with pytest.raises(MissingAgentError):
            handle(pipeline, "payments/create", {"X-Agent-ID": ""}, b"{}")

    def test_bad_json(self, engine: PolicyEngine, recording_audit: RecordingAuditSink) -> None:
        pipeline = make_pipeline(engine, recording_audit, Downstream())
        with pytest.raises(InvalidBodyError):
            handle(pipeline, "payments/create", FINANCE, b"{oops")
        assert recording_audit.decisions == []


class TestDeny:
    """Denied calls are audited and never forwarded."""

    def test_violation_raised(self, engine: PolicyEngine, recording_audit: RecordingAuditSink) -> None:
        downstream = Downstream()
        pipeline = make_pipeline(engine, recording_audit, downstream)
        params = {"amount": 10000, "currency": "USD"}

        with pytest.raises(PolicyViolationError) as exc_info:
            handle(pipeline, "payments/create", FINANCE, json.dumps(params).encode())

        assert exc_info.value.http_status == 403
        assert "max_amount=5000" in exc_info.value.reason
        assert downstream.requests == []

        (decision,) = recording_audit.decisions
        assert decision["allowed"] is False
        assert decision["agent_id"] == "finance-agent"
        assert decision["params_hash"] == fingerprint_params(params)
        assert decision["latency_ms"] >= 0
        assert recording_audit.forwards == []
        assert all(span.ended for span in recording_audit.spans)


class TestAllow:
    """Allowed calls are forwarded and produce two records."""

    def test_forwarded(self, engine: PolicyEngine, recording_audit: RecordingAuditSink) -> None:
        downstream = Downstream(status_code=201)
        pipeline = make_pipeline(engine, recording_audit, downstream)
        body = b'{"currency": "EUR", "amount": 100}'

        response = handle(pipeline, "payments/create", FINANCE, body)

        assert response.status_code == 201
        assert json.loads(response.body) == {"tool": "payments.test"}
        (request,) = downstream.requests
        assert request.content == body
        assert str(request.url) == "http://payments.test/create"

        assert [d["allowed"] for d in recording_audit.decisions] == [True]
        (forward,) = recording_audit.forwards
        assert forward["tool"] == "payments"
        assert forward["action"] == "create"
        assert forward["trace_id"] == recording_audit.spans[0].trace_id
        assert all(span.ended for span in recording_audit.spans)

    def test_audit_writes_leave_event_loop(self, engine: PolicyEngine) -> None:
        """Both records are written from worker threads, not the loop thread."""

        class ThreadRecordingSink(RecordingAuditSink):
            def __init__(self) -> None:
                super().__init__()
                self.threads: list[int] = []

            def record_decision(self, *args, **kwargs):
                self.threads.append(threading.get_ident())
                return super().record_decision(*args, **kwargs)

            def record_forward(self, *args, **kwargs):
                self.threads.append(threading.get_ident())
                return super().record_forward(*args, **kwargs)

        audit = ThreadRecordingSink()
        pipeline = make_pipeline(engine, audit, Downstream())
        handle(pipeline, "payments/create", FINANCE, b'{"amount": 1}')

        assert len(audit.threads) == 2
        assert threading.get_ident() not in audit.threads
        assert all(span.ended for span in audit.spans)

    def test_empty_body(self, engine: PolicyEngine, recording_audit: RecordingAuditSink) -> None:
        pipeline = make_pipeline(engine, recording_audit, Downstream())
        response = handle(pipeline, "payments/refund", FINANCE, b"")
        assert response.status_code == 200
        assert recording_audit.decisions[0]["params_hash"] == fingerprint_params({})

    def test_parent_agent_header_ignored(
        self, engine: PolicyEngine, recording_audit: RecordingAuditSink
    ) -> None:
        pipeline = make_pipeline(engine, recording_audit, Downstream())
        headers = {"X-Agent-ID": "hr-agent", "X-Parent-Agent-ID": "finance-agent"}
        response = handle(pipeline, "files/read", headers, b'{"path": "/hr-docs/a.pdf"}')
        assert response.status_code == 200
        assert recording_audit.decisions[0]["agent_id"] == "hr-agent"

    def test_unknown_tool_after_allow(
        self, temp_dir: Path, recording_audit: RecordingAuditSink
    ) -> None:
        """A granted but unregistered tool is a 400, with the decision audited."""
        (temp_dir / "search.yaml").write_text(
            "version: '1'\nagents:\n  - id: a\n    allow:\n      - tool: search\n        actions: [query]\n"
        )
        engine = PolicyEngine(temp_dir, watch=False)
        engine.start()
        pipeline = make_pipeline(engine, recording_audit, Downstream())

        with pytest.raises(UnknownToolError):
            handle(pipeline, "search/query", {"X-Agent-ID": "a"}, b"{}")

        assert [d["allowed"] for d in recording_audit.decisions] == [True]
        assert recording_audit.forwards == []

    def test_forward_failure_still_audited(
        self, engine: PolicyEngine, recording_audit: RecordingAuditSink
    ) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        forwarder = ToolForwarder({"payments": "http://payments.test"}, client=client)
        pipeline = GatewayPipeline(engine, recording_audit, forwarder)

        with pytest.raises(ForwardError):
            handle(pipeline, "payments/create", FINANCE, b"{}")

        assert len(recording_audit.decisions) == 1
        assert len(recording_audit.forwards) == 1
        assert all(span.ended for span in recording_audit.spans)


class TestDisconnect:
    """The outbound call is abandoned when the caller goes away."""

    def test_disconnect_cancels_forward(
        self, engine: PolicyEngine, recording_audit: RecordingAuditSink
    ) -> None:
        downstream = Downstream(delay=5)
        pipeline = make_pipeline(engine, recording_audit, downstream)
        checks: list[int] = []

        async def is_disconnected() -> bool:
            checks.append(1)
            return len(checks) >= 3

        with pytest.raises(ClientDisconnectedError) as exc_info:
            handle(pipeline, "payments/create", FINANCE, b"{}", is_disconnected=is_disconnected)

        assert exc_info.value.http_status == 499
        assert len(downstream.requests) <= 1
        assert len(recording_audit.forwards) == 1
        assert all(span.ended for span in recording_audit.spans)

    def test_connected_caller_gets_response(
        self, engine: PolicyEngine, recording_audit: RecordingAuditSink
    ) -> None:
        pipeline = make_pipeline(engine, recording_audit, Downstream(delay=0.05))

        async def is_disconnected() -> bool:
            return False

        response = handle(pipeline, "payments/create", FINANCE, b"{}", is_disconnected=is_disconnected)
        assert response.status_code == 200
