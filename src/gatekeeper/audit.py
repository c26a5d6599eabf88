"""
Audit trail for gateway decisions.

The gateway reports every decision, and every forwarded call, to an
AuditSink. The sink hands back an AuditSpan which the gateway closes when
the request finishes; the gateway never looks inside it.

Privacy:
    Raw request parameters never reach the sink. The gateway passes a
    fingerprint instead: the SHA-256 of the canonical JSON serialization,
    which is stable across key order and cannot be reversed.

Record format (one JSON object per line, JsonlAuditSink):
    {"timestamp": ..., "agent.id": ..., "tool.name": ..., "tool.action": ...,
     "decision.allow": "true"|"false", "reason": ..., "params.hash": ...,
     "latency.ms": ..., "trace.id": ..., "span.id": ...}
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TextIO

from gatekeeper.errors import AuditSinkError

logger = logging.getLogger(__name__)

AUDIT_LOG_NAME = "gatekeeper.log"


def fingerprint_params(params: dict[str, Any]) -> str:
    """Compute the SHA-256 fingerprint of request parameters."""
    content = json.dumps(
        params,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class AuditSpan:
    """
    Opaque handle for one audited step.

    Attributes:
        name: Span name ("policy.evaluate" or "tool.forward")
        trace_id: Shared by the decision and forward spans of one request
        span_id: Unique per span
        attributes: Recorded attributes (never raw parameters)
    """

    name: str
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    span_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    attributes: dict[str, Any] = field(default_factory=dict)
    ended_at: str | None = None

    @property
    def ended(self) -> bool:
        """Whether end() has been called."""
        return self.ended_at is not None

    def end(self) -> None:
        """Close the span. Calling it again has no effect."""
        if self.ended_at is None:
            self.ended_at = now_iso()

    def child(self, name: str, **attributes: Any) -> AuditSpan:
        """Start a span in the same trace."""
        return AuditSpan(name=name, trace_id=self.trace_id, attributes=attributes)

    def __enter__(self) -> AuditSpan:
        return self

    def __exit__(self, *args: Any) -> None:
        self.end()


class AuditSink(ABC):
    """
    Abstract destination for audit records.

    Implementations must be safe to call from concurrent requests.
    """

    @abstractmethod
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
        """Record one policy decision."""
        ...

    @abstractmethod
    def record_forward(
        self,
        tool: str,
        action: str,
        latency_ms: float,
        parent: AuditSpan | None = None,
    ) -> AuditSpan:
        """Record one forwarded call."""
        ...

    def close(self) -> None:
        """Release resources held by the sink."""


class JsonlAuditSink(AuditSink):
    """
    Appends audit records as JSON lines to <log_dir>/gatekeeper.log.

    Every record is also emitted on the "gatekeeper.audit" logger.

    Usage:
        sink = JsonlAuditSink("logs")
        with sink.record_decision("agent", "files", "read", True, "", h, 0.4):
            ...
        sink.close()
    """

    def __init__(self, log_dir: Path | str, service_name: str = "gatekeeper") -> None:
        """
        Open (or create) the audit log.

        Raises:
            AuditSinkError: If the directory or file cannot be opened
        """
        self.log_dir = Path(log_dir)
        self.log_path = self.log_dir / AUDIT_LOG_NAME
        self.service_name = service_name
        self._lock = threading.Lock()
        self._audit_logger = logging.getLogger("gatekeeper.audit")

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self._file: TextIO | None = self.log_path.open("a", encoding="utf-8")
        except OSError as e:
            raise AuditSinkError(target=str(self.log_path), underlying_error=str(e)) from e

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
        span = AuditSpan(
            name="policy.evaluate",
            attributes={
                "agent.id": agent_id,
                "tool.name": tool,
                "tool.action": action,
                "decision.allow": allowed,
                "params.hash": params_hash,
                "latency.ms": latency_ms,
            },
        )

        entry = {
            "timestamp": now_iso(),
            "service": self.service_name,
            "agent.id": agent_id,
            "tool.name": tool,
            "tool.action": action,
            "decision.allow": "true" if allowed else "false",
            "params.hash": params_hash,
            "latency.ms": latency_ms,
            "trace.id": span.trace_id,
            "span.id": span.span_id,
        }
        if reason:
            entry["reason"] = reason

        self._write(entry)
        return span

    def record_forward(
        self,
        tool: str,
        action: str,
        latency_ms: float,
        parent: AuditSpan | None = None,
    ) -> AuditSpan:
        attributes = {
            "tool.name": tool,
            "tool.action": action,
            "latency.ms": latency_ms,
        }
        if parent is not None:
            span = parent.child("tool.forward", **attributes)
        else:
            span = AuditSpan(name="tool.forward", attributes=attributes)

        self._write({
            "timestamp": now_iso(),
            "service": self.service_name,
            "event": "tool.forward",
            "tool.name": tool,
            "tool.action": action,
            "latency.ms": latency_ms,
            "trace.id": span.trace_id,
            "span.id": span.span_id,
        })
        return span

    def close(self) -> None:
        """Close the log file."""
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def _write(self, entry: dict[str, Any]) -> None:
        line = json.dumps(entry, ensure_ascii=False)
        with self._lock:
            if self._file is None:
                logger.warning("Audit sink is closed; dropping record for %s", entry.get("tool.name"))
                return
            self._file.write(line + "\n")
            self._file.flush()
        self._audit_logger.info(line)
