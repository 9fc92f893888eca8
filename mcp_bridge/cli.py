#!/usr/bin/env python3
"""
mcp-bridge command line: list tools, call a tool, show status, or serve the HTTP API
"""

import argparse
import asyncio
import json
import logging
import sys

from aiohttp import web

from .api_handlers import create_app
from .errors import MCPBridgeError
from .logging_config import configure_logging
from .service import MCPService

logger = logging.getLogger(__name__)


async def list_tools(service: MCPService, server_name=None):
    tools = await service.get_tools(server_name=server_name)
    print(json.dumps([proxy.to_dict() for proxy in tools.values()], indent=2))
    print(f"\nTotal tools available: {len(tools)}", file=sys.stderr)
    return 0


async def call_tool(service: MCPService, server_name: str, tool_name: str, raw_args: str):
    try:
        arguments = json.loads(raw_args)
    except json.JSONDecodeError as e:
        print(f"--args is not valid JSON: {e}", file=sys.stderr)
        return 2
    if not isinstance(arguments, dict):
        print("--args must be a JSON object", file=sys.stderr)
        return 2

    tools = await service.get_tools(server_name=server_name)
    proxy = tools.get(tool_name)
    if proxy is None:
        print(f'Tool "{tool_name}" not found on server "{server_name}"', file=sys.stderr)
        return 1
    result = await proxy.invoke(arguments)
    print(json.dumps(result.to_dict(), indent=2))
    return 1 if result.is_error else 0


async def show_status(service: MCPService):
    await service.initialize()
    print(json.dumps(service.status(), indent=2))
    return 0


async def serve(service: MCPService, host: str, port: int):
    shutdown = service.install_signal_handlers()
    await service.initialize()

    runner = web.AppRunner(create_app(service))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"MCP bridge started on http://{host}:{port}")
    logger.info("Available endpoints:")
    logger.info("  GET /health - Health check")
    logger.info("  GET /status - Service status")
    logger.info("  GET /tools - All tools")
    logger.info("  GET /tools/{name} - Tools for service")
    logger.info("  POST /call/{service}/{tool} - Call tool")
    try:
        await shutdown.wait()
    finally:
        await runner.cleanup()
        logger.info("Server runner cleaned up")
    return 0


async def run(args) -> int:
    service = MCPService(config_path=args.config)
    try:
        if args.command == 'tools':
            return await list_tools(service, args.server)
        if args.command == 'call':
            return await call_tool(service, args.server, args.tool, args.args)
        if args.command == 'status':
            return await show_status(service)
        if args.command == 'serve':
            return await serve(service, args.host, args.port)
        return 2
    except MCPBridgeError as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await service.cleanup()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mcp-bridge',
        description="Supervise MCP servers and expose their tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mcp-bridge tools                                  # List every tool
  mcp-bridge tools --server twitter                 # Tools of one server
  mcp-bridge call twitter post_tweet --args '{"text": "hi"}'
  mcp-bridge serve --port 5859                      # HTTP API
        """
    )
    parser.add_argument(
        '--config', '-c',
        type=str,
        default=None,
        help='Path to the MCP configuration file (default: ./mcp.config.json)'
    )
    parser.add_argument(
        '--debug', '-d',
        action='store_true',
        help='Enable debug logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    tools_parser = subparsers.add_parser('tools', help='List available tools')
    tools_parser.add_argument('--server', '-s', default=None, help='Only list tools of this server')

    call_parser = subparsers.add_parser('call', help='Call a tool')
    call_parser.add_argument('server', help='Server name')
    call_parser.add_argument('tool', help='Tool name')
    call_parser.add_argument('--args', '-a', default='{}', help='Tool arguments as a JSON object')

    subparsers.add_parser('status', help='Show server status')

    serve_parser = subparsers.add_parser('serve', help='Run the HTTP API')
    serve_parser.add_argument('--host', type=str, default='localhost', help='Host to bind to (default: localhost)')
    serve_parser.add_argument('--port', '-p', type=int, default=5859, help='Port to listen on (default: 5859)')

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    configure_logging(debug=args.debug)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
        return 130


if __name__ == "__main__":
    sys.exit(main())
