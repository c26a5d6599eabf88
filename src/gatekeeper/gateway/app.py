"""
Gatekeeper gateway - FastAPI application.

Agents send tool calls to POST /tools/{tool}/{action}; the gateway decides,
audits and forwards them. GET /health and GET /policies are read-only views
of the running engine.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from gatekeeper import __version__
from gatekeeper.audit import AuditSink, JsonlAuditSink
from gatekeeper.config import GatewaySettings, get_settings
from gatekeeper.errors import ForwardError, GatekeeperError, InvalidTargetError
from gatekeeper.gateway.forwarder import ToolForwarder
from gatekeeper.gateway.pipeline import GatewayPipeline
from gatekeeper.policy import PolicyEngine

logger = logging.getLogger(__name__)


def setup_error_handlers(app: FastAPI) -> None:
    """Register error handlers on the FastAPI app."""

    @app.exception_handler(GatekeeperError)
    async def gatekeeper_error_handler(request: Request, exc: GatekeeperError) -> JSONResponse:
        """Render gateway errors as {"error": kind, "reason": message}."""
        if isinstance(exc, ForwardError):
            logger.warning("Forward failed: %s", exc.message)
        else:
            logger.debug("Request rejected (%s): %s", exc.error_kind, exc.message)

        return JSONResponse(
            status_code=exc.http_status,
            content=exc.to_response(),
        )


def create_app(
    settings: GatewaySettings | None = None,
    engine: PolicyEngine | None = None,
    audit: AuditSink | None = None,
    forwarder: ToolForwarder | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Collaborators not passed in are built from settings.

    Raises:
        ConfigError: If the audit sink cannot be opened
    """
    settings = settings or get_settings()

    if engine is None:
        engine = PolicyEngine(
            settings.policies_dir,
            watch=settings.watch_policies,
            debounce_seconds=settings.reload_debounce_seconds,
            continue_on_condition_failure=settings.continue_on_condition_failure,
        )
    if audit is None:
        audit = JsonlAuditSink(settings.log_dir, service_name=settings.service_name)
    if forwarder is None:
        forwarder = ToolForwarder(settings.tools, timeout_seconds=settings.forward_timeout_seconds)

    pipeline = GatewayPipeline(
        engine,
        audit,
        forwarder,
        agent_header=settings.agent_header,
        parent_agent_header=settings.parent_agent_header,
        disconnect_poll_seconds=settings.disconnect_poll_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan manager.

        Loads policies and starts hot-reload; a missing policy directory
        aborts startup.
        """
        try:
            engine.start()
        except Exception:
            await forwarder.aclose()
            audit.close()
            raise
        logger.info(
            "Gateway ready: %d policy file(s), tools=%s",
            len(engine.store),
            sorted(forwarder.tools),
        )

        yield

        engine.stop()
        await forwarder.aclose()
        audit.close()
        logger.info("Gateway stopped")

    app = FastAPI(
        title="Gatekeeper",
        description="Policy-enforcing gateway for agent tool calls",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.audit = audit
    app.state.forwarder = forwarder
    app.state.pipeline = pipeline

    setup_error_handlers(app)

    @app.post("/tools")
    async def call_tool_without_target() -> Response:
        raise InvalidTargetError(path="/tools")

    @app.post("/tools/{target:path}")
    async def call_tool(target: str, request: Request) -> Response:
        """Decide, audit and forward one tool call."""
        body = await request.body()
        result = await pipeline.handle(
            target,
            request.headers,
            body,
            is_disconnected=request.is_disconnected,
        )

        response = Response(content=result.body, status_code=result.status_code)
        response.raw_headers.extend((name.lower(), value) for name, value in result.headers)
        return response

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness plus a summary of the loaded policies."""
        return {
            "status": "ok",
            "policies": len(engine.store),
            "watching": engine.watching,
        }

    @app.get("/policies")
    async def list_policies() -> dict[str, Any]:
        """Read-only listing of the loaded policy sources."""
        return {
            "policies": [
                {
                    "source_id": policy.source_id,
                    "version": policy.version,
                    "agents": list(policy.agent_ids()),
                }
                for policy in engine.store.snapshot()
            ]
        }

    return app
