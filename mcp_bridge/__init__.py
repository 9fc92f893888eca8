"""
mcp-bridge - supervise MCP tool servers and expose their tools as one validated namespace
"""

try:
    from importlib.metadata import PackageNotFoundError, version
    __version__ = version("mcp-bridge")
except PackageNotFoundError:
    # running from a source checkout
    __version__ = "unknown"

from .bridge import cleanup_mcp, execute_mcp_function, get_mcp_tools, initialize_mcp
from .errors import (
    CatalogueError,
    ConfigError,
    DuplicateToolError,
    HealthCheckTimeout,
    InitializationError,
    InvocationError,
    LaunchError,
    MCPBridgeError,
    ServerDisabledError,
    ServerNotFoundError,
    ServerNotRunningError,
    ToolValidationError,
    TransportError,
)
from .logging_config import configure_logging
from .mcp_config import (
    MCPServersConfig,
    ServerConfig,
    ServerMode,
    SseOptions,
    Timings,
    load_mcp_config,
    save_mcp_config,
    validate_server_config,
)
from .service import DuplicatePolicy, MCPService, ServiceState, get_service, reset_service
from .tools import ToolCallResult, ToolDescriptor, ToolProxy

__all__ = [
    "__version__",
    "initialize_mcp",
    "get_mcp_tools",
    "execute_mcp_function",
    "cleanup_mcp",
    "MCPService",
    "ServiceState",
    "DuplicatePolicy",
    "get_service",
    "reset_service",
    "MCPServersConfig",
    "ServerConfig",
    "ServerMode",
    "SseOptions",
    "Timings",
    "load_mcp_config",
    "save_mcp_config",
    "validate_server_config",
    "configure_logging",
    "ToolCallResult",
    "ToolDescriptor",
    "ToolProxy",
    "MCPBridgeError",
    "ConfigError",
    "LaunchError",
    "HealthCheckTimeout",
    "TransportError",
    "CatalogueError",
    "InvocationError",
    "ToolValidationError",
    "ServerNotFoundError",
    "ServerDisabledError",
    "ServerNotRunningError",
    "DuplicateToolError",
    "InitializationError",
]
