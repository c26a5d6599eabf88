"""
HTTP gateway for Gatekeeper.

Key concepts:
    - GatewayPipeline: Decide, audit and forward one call
    - ToolForwarder: Delivers allowed calls to tool services
    - create_app: FastAPI application wiring it all together
"""

from gatekeeper.gateway.app import create_app, setup_error_handlers
from gatekeeper.gateway.forwarder import ForwardedResponse, ToolForwarder
from gatekeeper.gateway.pipeline import GatewayPipeline, parse_body, parse_target

__all__ = [
    "ForwardedResponse",
    "GatewayPipeline",
    "ToolForwarder",
    "create_app",
    "parse_body",
    "parse_target",
    "setup_error_handlers",
]
