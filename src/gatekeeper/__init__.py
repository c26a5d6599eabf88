"""
Gatekeeper - Policy-enforcing gateway for agent tool calls.

Gatekeeper sits between AI agents and the tool services they call.
It provides:
- Deny-by-default policy enforcement from a directory of YAML documents
- Hot-reload of policy files without dropping requests
- An audit record for every decision and every forwarded call
- Verbatim forwarding of allowed calls to registered tools

Example usage:
    $ gatekeeper serve --policies policies/
    $ gatekeeper validate policies/
    $ gatekeeper evaluate --policies policies/ --agent finance-agent payments create
"""

__version__ = "0.1.0"
__author__ = "Gatekeeper Contributors"

__all__ = [
    "__version__",
    "__author__",
]
