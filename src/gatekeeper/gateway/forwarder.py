"""
Forwarding of allowed calls to downstream tool services.

Policy enforcement happens BEFORE anything in this module runs. By the
time forward() is called the decision has been made and audited.

Behavior:
    - POST {base_url}/{action} with the caller's body, byte for byte
    - One shared AsyncClient with a fixed timeout; no retries
    - Downstream status, headers and raw body come back unmodified, except
      for hop-by-hop headers that only make sense per connection
    - Non-2xx downstream responses are results, not errors
    - Cancelling the awaiting task aborts the outbound request
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

import httpx

from gatekeeper.errors import ForwardError, ForwardTimeoutError, UnknownToolError

logger = logging.getLogger(__name__)

# Connection-scoped headers that must not be copied to the caller
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "content-length",
})


@dataclass
class ForwardedResponse:
    """
    What the downstream tool answered.

    Attributes:
        status_code: Downstream HTTP status
        headers: Raw (name, value) pairs, hop-by-hop headers removed
        body: Raw response body (still content-encoded, if it was)
    """

    status_code: int
    headers: list[tuple[bytes, bytes]] = field(default_factory=list)
    body: bytes = b""


class ToolForwarder:
    """
    Sends allowed calls to registered tool services.

    Usage:
        forwarder = ToolForwarder({"payments": "http://localhost:8081"})
        response = await forwarder.forward("payments", "create", b'{"amount": 10}')
        await forwarder.aclose()

    Attributes:
        tools: Tool name -> base URL (no trailing slash)
        timeout_seconds: Bound on each outbound call
    """

    def __init__(
        self,
        tools: Mapping[str, str],
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Args:
            tools: Tool name -> base URL
            timeout_seconds: Timeout applied to each outbound call
            client: Pre-built client (tests inject one with a MockTransport)
        """
        self.tools = {name: url.rstrip("/") for name, url in tools.items()}
        self.timeout_seconds = timeout_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    def base_url(self, tool: str) -> str:
        """
        Registered base URL for a tool.

        Raises:
            UnknownToolError: If the tool is not registered
        """
        try:
            return self.tools[tool]
        except KeyError:
            raise UnknownToolError(tool=tool) from None

    async def forward(self, tool: str, action: str, body: bytes) -> ForwardedResponse:
        """
        Deliver one call and return the downstream response.

        Raises:
            UnknownToolError: If the tool is not registered
            ForwardTimeoutError: If the tool does not answer in time
            ForwardError: If the tool cannot be reached
        """
        url = f"{self.base_url(tool)}/{action}"

        try:
            request = self._client.build_request(
                "POST",
                url,
                content=body,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
            response = await self._client.send(request, stream=True)
            try:
                raw_body = b"".join([chunk async for chunk in response.aiter_raw()])
            finally:
                await response.aclose()
        except httpx.TimeoutException as e:
            raise ForwardTimeoutError(
                tool=tool,
                action=action,
                timeout_seconds=self.timeout_seconds,
                underlying_error=str(e) or type(e).__name__,
            ) from e
        except httpx.HTTPError as e:
            raise ForwardError(
                tool=tool,
                action=action,
                underlying_error=str(e) or type(e).__name__,
            ) from e

        headers = [
            (name, value)
            for name, value in response.headers.raw
            if name.lower().decode("latin-1") not in HOP_BY_HOP_HEADERS
        ]

        logger.debug("Forwarded %s/%s -> %d", tool, action, response.status_code)
        return ForwardedResponse(
            status_code=response.status_code,
            headers=headers,
            body=raw_body,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
