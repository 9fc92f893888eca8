"""
Module-level entry points backed by the process-wide MCPService
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .mcp_config import MCPServersConfig, load_mcp_config
from .service import get_service
from .tools import ToolCallResult, ToolProxy

logger = logging.getLogger(__name__)


async def initialize_mcp(
    config_path: Union[str, Path, None] = None,
    config: Union[MCPServersConfig, Dict[str, Any], None] = None,
    debug: bool = False,
) -> None:
    """Load configuration (explicit object, path, or ./mcp.config.json) and start every server"""
    service = get_service()
    try:
        if config is not None:
            service.configure(config)
        elif config_path is not None:
            service.configure(load_mcp_config(config_path))
        await service.initialize(debug=debug)
        logger.info("MCP initialization complete")
    except Exception as e:
        logger.error(f"MCP initialization failed: {e}")
        raise


async def get_mcp_tools(server_name: Optional[str] = None, debug: bool = False) -> Dict[str, ToolProxy]:
    """Tool proxies of every running server, or of one named server"""
    try:
        tools = await get_service().get_tools(server_name=server_name, debug=debug)
    except Exception as e:
        suffix = f" for server {server_name}" if server_name else ""
        logger.error(f"Failed to get MCP tools{suffix}: {e}")
        raise
    logger.debug(f"Retrieved {len(tools)} MCP tools{f' for server {server_name}' if server_name else ' for all servers'}")
    return tools


async def execute_mcp_function(server_name: str, function_name: str, args: Dict[str, Any]) -> ToolCallResult:
    return await get_service().execute_function(server_name, function_name, args)


async def cleanup_mcp() -> None:
    """Release every server, client and proxy; call on application shutdown"""
    await get_service().cleanup()
