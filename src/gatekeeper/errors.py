"""
Exception hierarchy for Gatekeeper.

All Gatekeeper exceptions inherit from GatekeeperError, allowing callers to
catch every gateway-specific failure with a single except clause.

Exception Categories:
    - ConfigError: Startup-fatal configuration problems
    - LoadError: A single policy source failed to parse or validate
    - WatchError: Filesystem notification failure during hot-reload
    - RequestError: Malformed inbound request (client error)
    - PolicyViolationError: Call denied by policy
    - ForwardError: Downstream tool unreachable or timed out

Each class carries the HTTP status and wire error kind used when the
gateway renders it as a response.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar


# =============================================================================
# Error Codes
# =============================================================================

# Configuration errors: 1xxx
ERROR_CONFIG = 1001
ERROR_CONFIG_POLICY_DIRECTORY = 1002
ERROR_CONFIG_AUDIT_SINK = 1003

# Load errors: 2xxx
ERROR_LOAD_FAILED = 2001

# Watch errors: 3xxx
ERROR_WATCH_FAILED = 3001

# Request errors: 4xxx
ERROR_REQUEST_INVALID = 4000
ERROR_REQUEST_INVALID_TARGET = 4001
ERROR_REQUEST_MISSING_AGENT = 4002
ERROR_REQUEST_INVALID_BODY = 4003
ERROR_REQUEST_UNKNOWN_TOOL = 4004

# Policy errors: 5xxx
ERROR_POLICY_VIOLATION = 5001

# Forwarding errors: 6xxx
ERROR_FORWARD_FAILED = 6001
ERROR_FORWARD_TIMEOUT = 6002
ERROR_FORWARD_CANCELLED = 6003


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class GatekeeperError(Exception):
    """
    Base exception for all Gatekeeper errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    http_status: ClassVar[int] = 500
    error_kind: ClassVar[str] = "GatewayError"

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }

    def to_response(self) -> dict[str, str]:
        """Wire body sent back to the calling agent."""
        return {"error": self.error_kind, "reason": self.message}


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigError(GatekeeperError):
    """
    Raised when the gateway cannot start with the given configuration.

    These are fatal at startup: the process should refuse to run.
    """

    error_kind: ClassVar[str] = "ConfigError"

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_CONFIG


@dataclass
class PolicyDirectoryError(ConfigError):
    """Raised when the policy directory is missing or unreadable."""

    directory: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Policy directory does not exist: {self.directory}"
        if self.code == 0:
            self.code = ERROR_CONFIG_POLICY_DIRECTORY
        if not self.suggestion:
            self.suggestion = "Create the directory or point GATEKEEPER_POLICIES_DIR at it"
        super().__post_init__()
        self.context["directory"] = self.directory


@dataclass
class AuditSinkError(ConfigError):
    """Raised when the audit sink cannot be initialized."""

    target: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to open audit log {self.target}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CONFIG_AUDIT_SINK
        if not self.suggestion:
            self.suggestion = "Check that the log directory is writable"
        super().__post_init__()
        self.context.update({
            "target": self.target,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Load Errors
# =============================================================================


@dataclass
class LoadError(GatekeeperError):
    """
    Raised when a single policy source fails to parse or validate.

    Load errors are isolated: the failing source is skipped (or keeps its
    last-good entry on reload) and every other source still loads.

    Attributes:
        source: Identifier of the failing source (absolute file path)
        reason: What was wrong with it
    """

    error_kind: ClassVar[str] = "LoadError"

    source: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to load policy {self.source}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_LOAD_FAILED
        self.context.update({
            "source": self.source,
            "reason": self.reason,
        })


# =============================================================================
# Watch Errors
# =============================================================================


@dataclass
class WatchError(GatekeeperError):
    """Raised or logged when filesystem notifications fail."""

    error_kind: ClassVar[str] = "WatchError"

    directory: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Policy watcher error on {self.directory}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_WATCH_FAILED
        self.context.update({
            "directory": self.directory,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Request Errors
# =============================================================================


@dataclass
class RequestError(GatekeeperError):
    """
    Base class for malformed inbound requests.

    These are answered with a 400 and never reach policy evaluation
    (except UnknownToolError, which is raised after an allow decision).
    """

    http_status: ClassVar[int] = 400
    error_kind: ClassVar[str] = "BadRequest"

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_REQUEST_INVALID


@dataclass
class InvalidTargetError(RequestError):
    """Raised when the request path is not /tools/{tool}/{action}."""

    error_kind: ClassVar[str] = "InvalidPath"

    path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "Invalid path. Expected: /tools/{tool}/{action}"
        if self.code == 0:
            self.code = ERROR_REQUEST_INVALID_TARGET
        super().__post_init__()
        self.context["path"] = self.path


@dataclass
class MissingAgentError(RequestError):
    """Raised when the agent identity header is absent."""

    error_kind: ClassVar[str] = "MissingAgentID"

    header: str = "X-Agent-ID"

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Missing {self.header} header"
        if self.code == 0:
            self.code = ERROR_REQUEST_MISSING_AGENT
        super().__post_init__()
        self.context["header"] = self.header


@dataclass
class InvalidBodyError(RequestError):
    """Raised when the request body is not a JSON object."""

    error_kind: ClassVar[str] = "InvalidJSON"

    detail: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid JSON: {self.detail}"
        if self.code == 0:
            self.code = ERROR_REQUEST_INVALID_BODY
        super().__post_init__()
        self.context["detail"] = self.detail


@dataclass
class UnknownToolError(RequestError):
    """Raised when no base address is registered for the tool."""

    error_kind: ClassVar[str] = "UnknownTool"

    tool: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Unknown tool: {self.tool}"
        if self.code == 0:
            self.code = ERROR_REQUEST_UNKNOWN_TOOL
        if not self.suggestion:
            self.suggestion = "Register the tool in GATEKEEPER_TOOLS"
        super().__post_init__()
        self.context["tool"] = self.tool


# =============================================================================
# Policy Errors
# =============================================================================


@dataclass
class PolicyViolationError(GatekeeperError):
    """
    Raised when a tool call is denied by policy.

    The reason is sent to the caller verbatim. It only ever names the
    failing condition and its configured bound, so request parameters are
    not part of this error or its context.

    Attributes:
        agent_id: Agent that made the call
        tool: Tool that was requested
        action: Action that was requested
        reason: Why the policy denied this call
    """

    http_status: ClassVar[int] = 403
    error_kind: ClassVar[str] = "PolicyViolation"

    agent_id: str = ""
    tool: str = ""
    action: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = self.reason
        if self.code == 0:
            self.code = ERROR_POLICY_VIOLATION
        self.context.update({
            "agent_id": self.agent_id,
            "tool": self.tool,
            "action": self.action,
            "reason": self.reason,
        })


# =============================================================================
# Forwarding Errors
# =============================================================================


@dataclass
class ForwardError(GatekeeperError):
    """
    Raised when an allowed call cannot be delivered to its tool.

    Downstream non-2xx responses are not errors; they are passed through.
    """

    http_status: ClassVar[int] = 502
    error_kind: ClassVar[str] = "ForwardError"

    tool: str = ""
    action: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to forward request to {self.tool}/{self.action}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_FORWARD_FAILED
        self.context.update({
            "tool": self.tool,
            "action": self.action,
            "underlying_error": self.underlying_error,
        })


@dataclass
class ForwardTimeoutError(ForwardError):
    """Raised when the downstream tool does not answer in time."""

    http_status: ClassVar[int] = 504
    error_kind: ClassVar[str] = "ForwardTimeout"

    timeout_seconds: float = 0.0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Tool {self.tool} timed out after {self.timeout_seconds}s"
        if self.code == 0:
            self.code = ERROR_FORWARD_TIMEOUT
        super().__post_init__()
        self.context["timeout_seconds"] = self.timeout_seconds


@dataclass
class ClientDisconnectedError(ForwardError):
    """Raised when the caller went away while the forward was in flight."""

    http_status: ClassVar[int] = 499
    error_kind: ClassVar[str] = "ClientDisconnected"

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Client disconnected; forward to {self.tool}/{self.action} aborted"
        if self.code == 0:
            self.code = ERROR_FORWARD_CANCELLED
        super().__post_init__()
