"""
Exception hierarchy for the MCP bridge.

Failures local to one server (launch, health, transport, catalogue) are
caught and recorded per server; only InitializationError and the lookup
errors cross the public boundary.
"""

from typing import Dict, Optional


class MCPBridgeError(Exception):
    """Base class for all bridge errors"""

    def __init__(self, message: str, server_name: Optional[str] = None):
        super().__init__(message)
        self.server_name = server_name


class ConfigError(MCPBridgeError):
    """Malformed or missing server configuration"""


class LaunchError(MCPBridgeError):
    """Process failed to spawn, exited early, or its port is unavailable"""


class HealthCheckTimeout(MCPBridgeError):
    """Server was spawned or dialed but never became ready"""


class TransportError(MCPBridgeError):
    """Connection to an upstream server failed or dropped"""


class CatalogueError(MCPBridgeError):
    """Tool list could not be fetched after retries"""


class InvocationError(MCPBridgeError):
    """A single tool call failed"""


class ToolValidationError(InvocationError):
    """Tool arguments rejected by the compiled input schema"""

    def __init__(self, message: str, tool_name: str, errors: Optional[list] = None):
        super().__init__(message)
        self.tool_name = tool_name
        self.errors = errors or []


class ServerNotFoundError(MCPBridgeError):
    def __init__(self, server_name: str):
        super().__init__(f'Server "{server_name}" not found in configuration', server_name)


class ServerDisabledError(MCPBridgeError):
    def __init__(self, server_name: str):
        super().__init__(f'Server "{server_name}" is disabled', server_name)


class ServerNotRunningError(MCPBridgeError):
    def __init__(self, server_name: str):
        super().__init__(f'Server "{server_name}" is not running', server_name)


class DuplicateToolError(MCPBridgeError):
    """Two servers advertise the same tool name under the error policy"""

    def __init__(self, tool_name: str, first_server: str, second_server: str):
        super().__init__(
            f'Tool "{tool_name}" from server "{second_server}" collides with '
            f'the tool of the same name from "{first_server}"',
            second_server,
        )
        self.tool_name = tool_name
        self.first_server = first_server


class InitializationError(MCPBridgeError):
    """No server reached the ready state"""

    def __init__(self, failures: Dict[str, str]):
        self.failures = dict(failures)
        if self.failures:
            details = "\n".join(f"{name}: {reason}" for name, reason in self.failures.items())
            message = f"All servers failed to initialize:\n{details}"
        else:
            message = "No enabled servers found in configuration"
        super().__init__(message)
