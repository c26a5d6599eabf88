"""
Pytest configuration and fixtures for Gatekeeper tests.

This module provides shared fixtures used across unit, integration,
and security tests.
"""

import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

from gatekeeper.audit import AuditSink, AuditSpan
from gatekeeper.config import reset_settings


FINANCE_POLICY_YAML = """
version: "1.0"
agents:
  - id: finance-agent
    allow:
      - tool: payments
        actions: [create, refund]
        conditions:
          max_amount: 5000
          currencies: [USD, EUR]
"""

HR_POLICY_YAML = """
version: "1.0"
agents:
  - id: hr-agent
    allow:
      - tool: files
        actions: [read]
        conditions:
          folder_prefix: /hr-docs/
"""


class RecordingAuditSink(AuditSink):
    """Audit sink that keeps every record in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.decisions: list[dict[str, Any]] = []
        self.forwards: list[dict[str, Any]] = []
        self.spans: list[AuditSpan] = []
        self.closed = False

    def record_decision(
        self,
        agent_id: str,
        tool: str,
        action: str,
        allowed: bool,
        reason: str,
        params_hash: str,
        latency_ms: float,
    ) -> AuditSpan:
        span = AuditSpan(name="policy.evaluate")
        with self._lock:
            self.decisions.append({
                "agent_id": agent_id,
                "tool": tool,
                "action": action,
                "allowed": allowed,
                "reason": reason,
                "params_hash": params_hash,
                "latency_ms": latency_ms,
            })
            self.spans.append(span)
        return span

    def record_forward(
        self,
        tool: str,
        action: str,
        latency_ms: float,
        parent: AuditSpan | None = None,
    ) -> AuditSpan:
        span = parent.child("tool.forward") if parent else AuditSpan(name="tool.forward")
        with self._lock:
            self.forwards.append({
                "tool": tool,
                "action": action,
                "latency_ms": latency_ms,
                "trace_id": span.trace_id,
            })
            self.spans.append(span)
        return span

    def close(self) -> None:
        self.closed = True


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll until predicate() is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Generator[None, None, None]:
    """Never leak cached settings between tests."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def policies_dir(temp_dir: Path) -> Path:
    """Policy directory holding the finance and hr example documents."""
    directory = temp_dir / "policies"
    directory.mkdir()
    (directory / "finance.yaml").write_text(FINANCE_POLICY_YAML)
    (directory / "hr.yml").write_text(HR_POLICY_YAML)
    return directory


@pytest.fixture
def finance_policy_yaml() -> str:
    """Return the finance-agent policy YAML."""
    return FINANCE_POLICY_YAML


@pytest.fixture
def hr_policy_yaml() -> str:
    """Return the hr-agent policy YAML."""
    return HR_POLICY_YAML


@pytest.fixture
def recording_audit() -> RecordingAuditSink:
    """In-memory audit sink."""
    return RecordingAuditSink()
