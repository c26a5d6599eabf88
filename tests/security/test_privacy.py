"""
Security tests for what the gateway reveals.

These tests verify that:
1. Denial reasons never echo request values back to the caller
2. Audit records carry a fingerprint instead of raw parameters
3. Nothing sensitive is written to application logs

These are security-critical tests - failures here mean request payloads
can leak into responses or long-lived logs.
"""

import json
import logging
from pathlib import Path
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient

from gatekeeper.audit import AUDIT_LOG_NAME
from gatekeeper.config import GatewaySettings
from gatekeeper.gateway import ToolForwarder, create_app
from gatekeeper.policy import PolicyEngine

SECRET = "4111-1111-1111-1111"


@pytest.fixture
def settings(policies_dir: Path, temp_dir: Path) -> GatewaySettings:
    return GatewaySettings(
        policies_dir=policies_dir,
        log_dir=temp_dir / "logs",
        watch_policies=False,
        tools={"payments": "http://payments.test", "files": "http://files.test"},
    )


@pytest.fixture
def client(settings: GatewaySettings) -> Generator[TestClient, None, None]:
    forwarder = ToolForwarder(
        settings.tools,
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
        ),
    )
    with TestClient(create_app(settings, forwarder=forwarder)) as test_client:
        yield test_client


class TestDenialReasons:
    """Reasons name the rule, not the request."""

    @pytest.mark.parametrize(
        "params",
        [
            {"amount": 987654321, "card": SECRET},
            {"amount": 1, "currency": SECRET},
            {"amount": SECRET},
        ],
    )
    def test_payments_reason_has_no_values(self, client: TestClient, params: dict) -> None:
        response = client.post(
            "/tools/payments/create",
            headers={"X-Agent-ID": "finance-agent"},
            content=json.dumps(params).encode(),
        )
        assert response.status_code == 403
        assert SECRET not in response.text
        assert "987654321" not in response.text

    def test_path_reason_has_no_values(self, client: TestClient) -> None:
        response = client.post(
            "/tools/files/read",
            headers={"X-Agent-ID": "hr-agent"},
            content=json.dumps({"path": f"/finance/{SECRET}.pdf"}).encode(),
        )
        assert response.status_code == 403
        assert SECRET not in response.text

    def test_invalid_json_reason_has_no_values(self, client: TestClient) -> None:
        response = client.post(
            "/tools/payments/create",
            headers={"X-Agent-ID": "finance-agent"},
            content=f'{{"card": "{SECRET}", }}'.encode(),
        )
        assert response.status_code == 400
        assert SECRET not in response.text


class TestAuditPrivacy:
    """The audit log sees fingerprints only."""

    def test_audit_log_has_no_raw_params(
        self, client: TestClient, settings: GatewaySettings
    ) -> None:
        for agent, target, params in [
            ("finance-agent", "payments/create", {"amount": 10, "currency": "USD", "card": SECRET}),
            ("finance-agent", "payments/create", {"amount": 10**9, "card": SECRET}),
            ("hr-agent", "files/read", {"path": f"/hr-docs/{SECRET}"}),
        ]:
            client.post(
                f"/tools/{target}",
                headers={"X-Agent-ID": agent},
                content=json.dumps(params).encode(),
            )

        content = (settings.log_dir / AUDIT_LOG_NAME).read_text()
        assert content
        assert SECRET not in content
        assert "1000000000" not in content

    def test_application_logs_have_no_raw_params(
        self, client: TestClient, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.DEBUG):
            client.post(
                "/tools/payments/create",
                headers={"X-Agent-ID": "finance-agent", "X-Parent-Agent-ID": "orchestrator"},
                content=json.dumps({"amount": 10**9, "card": SECRET}).encode(),
            )

        assert SECRET not in caplog.text


class TestPrefixMatching:
    """folder_prefix is an exact string prefix."""

    @pytest.mark.parametrize(
        "path",
        [
            "/HR-DOCS/salaries.csv",
            "/hr-docs",
            "/hr-docs-archive/salaries.csv",
            " /hr-docs/salaries.csv",
            "hr-docs/salaries.csv",
        ],
    )
    def test_near_misses_denied(self, policies_dir: Path, path: str) -> None:
        engine = PolicyEngine(policies_dir, watch=False)
        engine.start()
        assert engine.evaluate("hr-agent", "files", "read", {"path": path}).allowed is False

    def test_non_string_path_denied(self, policies_dir: Path) -> None:
        engine = PolicyEngine(policies_dir, watch=False)
        engine.start()
        decision = engine.evaluate("hr-agent", "files", "read", {"path": {"startswith": "/hr-docs/"}})
        assert decision.allowed is False
