"""
Request pipeline for the gateway.

The pipeline is the orchestration layer between an inbound call and a
downstream tool. It coordinates between:
- Policy Engine: Decides if the call is allowed
- Audit sink: Records every decision and every forward
- Forwarder: Delivers allowed calls

Execution Flow:
    1. Parse tool and action from the request target
    2. Require the agent identity header
    3. Parse the body as a JSON object (empty body = no parameters)
    4. Fingerprint the parameters for the audit trail
    5. Evaluate policy and record the decision
    6. Deny: raise PolicyViolationError
    7. Allow: forward the original body, record the forward, return the
       downstream response

Steps 1-3 raise RequestError subclasses before anything is audited.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Mapping

from gatekeeper.audit import AuditSink, fingerprint_params
from gatekeeper.errors import (
    ClientDisconnectedError,
    InvalidBodyError,
    InvalidTargetError,
    MissingAgentError,
    PolicyViolationError,
)
from gatekeeper.gateway.forwarder import ForwardedResponse, ToolForwarder
from gatekeeper.policy import PolicyEngine

logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]


def parse_target(target: str) -> tuple[str, str]:
    """
    Split "{tool}/{action}" into its parts.

    Raises:
        InvalidTargetError: Unless there are exactly two non-empty segments
    """
    parts = target.split("/")
    if len(parts) != 2 or not all(parts):
        raise InvalidTargetError(path=f"/tools/{target}")
    return parts[0], parts[1]


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def parse_body(body: bytes) -> dict[str, Any]:
    """
    Parse the request body into parameters.

    Raises:
        InvalidBodyError: If the body is not a JSON object
    """
    if not body:
        return {}

    try:
        data = json.loads(body, parse_constant=_reject_constant)
    except ValueError as e:
        raise InvalidBodyError(detail=str(e)) from e

    if not isinstance(data, dict):
        raise InvalidBodyError(detail=f"body must be a JSON object, got {type(data).__name__}")
    return data


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


class GatewayPipeline:
    """
    Per-request orchestration: decide, forward, audit.

    Usage:
        pipeline = GatewayPipeline(engine, audit, forwarder)
        response = await pipeline.handle("payments/create", headers, body)

    Attributes:
        engine: Policy engine consulted for every call
        audit: Sink receiving decision and forward records
        forwarder: Delivers allowed calls
    """

    def __init__(
        self,
        engine: PolicyEngine,
        audit: AuditSink,
        forwarder: ToolForwarder,
        agent_header: str = "X-Agent-ID",
        parent_agent_header: str = "X-Parent-Agent-ID",
        disconnect_poll_seconds: float = 0.1,
    ) -> None:
        self.engine = engine
        self.audit = audit
        self.forwarder = forwarder
        self.agent_header = agent_header
        self.parent_agent_header = parent_agent_header
        self.disconnect_poll_seconds = disconnect_poll_seconds

    async def handle(
        self,
        target: str,
        headers: Mapping[str, str],
        body: bytes,
        is_disconnected: DisconnectCheck | None = None,
    ) -> ForwardedResponse:
        """
        Run one call through the pipeline.

        Args:
            target: Request path below /tools/, e.g. "payments/create"
            headers: Request headers (case-insensitive mapping)
            body: Raw request body
            is_disconnected: Reports whether the caller has gone away

        Returns:
            The downstream response for an allowed call

        Raises:
            RequestError: Malformed target, header or body; unknown tool
            PolicyViolationError: The call was denied
            ForwardError: The allowed call could not be delivered
        """
        start = time.perf_counter()

        tool, action = parse_target(target)

        agent_id = headers.get(self.agent_header)
        if not agent_id:
            raise MissingAgentError(header=self.agent_header)

        parent_agent_id = headers.get(self.parent_agent_header)
        if parent_agent_id:
            logger.debug("Call from %s on behalf of %s", agent_id, parent_agent_id)

        params = parse_body(body)
        params_hash = fingerprint_params(params)

        decision = self.engine.evaluate(agent_id, tool, action, params)
        latency_ms = _elapsed_ms(start)

        # Sinks may block on file I/O; keep it off the event loop
        span = await asyncio.to_thread(
            self.audit.record_decision,
            agent_id,
            tool,
            action,
            decision.allowed,
            decision.reason,
            params_hash,
            latency_ms,
        )
        with span:
            if not decision.allowed:
                raise PolicyViolationError(
                    agent_id=agent_id,
                    tool=tool,
                    action=action,
                    reason=decision.reason,
                )

            # Unknown tools are rejected before anything goes out
            self.forwarder.base_url(tool)

            forward_start = time.perf_counter()
            try:
                return await self._forward(tool, action, body, is_disconnected)
            finally:
                # Shielded so the record is still written if this request is cancelled
                forward_span = await asyncio.shield(asyncio.to_thread(
                    self.audit.record_forward,
                    tool,
                    action,
                    _elapsed_ms(forward_start),
                    parent=span,
                ))
                forward_span.end()

    async def _forward(
        self,
        tool: str,
        action: str,
        body: bytes,
        is_disconnected: DisconnectCheck | None,
    ) -> ForwardedResponse:
        if is_disconnected is None:
            return await self.forwarder.forward(tool, action, body)

        task = asyncio.ensure_future(self.forwarder.forward(tool, action, body))
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=self.disconnect_poll_seconds)
                if done:
                    return task.result()
                if await is_disconnected():
                    task.cancel()
                    await asyncio.wait({task})
                    logger.info("Caller disconnected; aborted forward to %s/%s", tool, action)
                    raise ClientDisconnectedError(tool=tool, action=action)
        finally:
            if not task.done():
                task.cancel()
