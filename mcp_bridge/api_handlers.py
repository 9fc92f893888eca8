"""
HTTP API handlers exposing the MCP service over aiohttp
"""

import json
import logging
import os
import time

from aiohttp import web

from .errors import (
    ConfigError,
    DuplicateToolError,
    InitializationError,
    ServerDisabledError,
    ServerNotFoundError,
    ServerNotRunningError,
)
from .service import MCPService

logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("service", MCPService)

# lookup failures: the server exists but cannot serve the request right now
_CONFLICT_ERRORS = (ServerDisabledError, ServerNotRunningError, DuplicateToolError)


def _error_response(error: Exception, context: str) -> web.Response:
    if isinstance(error, ServerNotFoundError):
        status = 404
    elif isinstance(error, _CONFLICT_ERRORS):
        status = 409
    elif isinstance(error, (InitializationError, ConfigError)):
        status = 503
    else:
        status = 500
    if status == 500:
        logger.error(f"{context} error: {error}")
    else:
        logger.info(f"{context} failed: {error}")
    return web.json_response({"error": str(error)}, status=status)


async def health_handler(request):
    """GET /health - Fast health check"""
    return web.json_response({"status": "ok", "timestamp": time.time()})


async def status_handler(request):
    """GET /status - Service state with per-server status"""
    service = request.app[SERVICE_KEY]
    status = service.status()
    status["pid"] = os.getpid()
    return web.json_response(status)


async def get_all_tools_handler(request):
    """GET /tools - Merged catalogue of every running server"""
    service = request.app[SERVICE_KEY]
    try:
        tools = await service.get_tools()
    except Exception as e:
        return _error_response(e, "Get all tools")
    return web.json_response({
        "tools": [proxy.to_dict() for proxy in tools.values()],
        "count": len(tools),
    })


async def get_tools_handler(request):
    """GET /tools/{name} - Catalogue of one server"""
    service = request.app[SERVICE_KEY]
    service_name = request.match_info['name']
    try:
        tools = await service.get_tools(server_name=service_name)
    except Exception as e:
        return _error_response(e, f"Get tools for {service_name}")
    return web.json_response({
        "service": service_name,
        "tools": [proxy.to_dict() for proxy in tools.values()],
        "count": len(tools),
    })


async def call_tool_handler(request):
    """POST /call/{service}/{tool} - Validate arguments and call a tool"""
    service = request.app[SERVICE_KEY]
    service_name = request.match_info['service']
    tool_name = request.match_info['tool']

    try:
        data = await request.json() if request.can_read_body else {}
    except json.JSONDecodeError as e:
        return web.json_response({"error": f"Request body is not valid JSON: {e}"}, status=400)
    arguments = data.get('arguments', {}) if isinstance(data, dict) else None
    if not isinstance(arguments, dict):
        return web.json_response({"error": "'arguments' must be an object"}, status=400)

    try:
        tools = await service.get_tools(server_name=service_name)
    except Exception as e:
        return _error_response(e, f"Call tool {service_name}/{tool_name}")

    proxy = tools.get(tool_name)
    if proxy is None:
        return web.json_response(
            {"error": f'Tool "{tool_name}" not found on server "{service_name}"'}, status=404
        )

    result = await proxy.invoke(arguments)
    return web.json_response(result.to_dict())


@web.middleware
async def logging_middleware(request, handler):
    start_time = time.monotonic()
    try:
        response = await handler(request)
    except Exception as e:
        logger.error(f"{request.method} {request.path} - ERROR: {e} - {time.monotonic() - start_time:.3f}s")
        raise
    logger.info(f"{request.method} {request.path} - {response.status} - {time.monotonic() - start_time:.3f}s")
    return response


def setup_routes(app):
    """Setup all API routes with CORS support"""
    import aiohttp_cors

    cors = aiohttp_cors.setup(app, defaults={
        "*": aiohttp_cors.ResourceOptions(
            allow_credentials=True,
            expose_headers="*",
            allow_headers="*",
            allow_methods="*"
        )
    })

    cors.add(app.router.add_get('/health', health_handler))
    cors.add(app.router.add_get('/status', status_handler))
    cors.add(app.router.add_get('/tools', get_all_tools_handler))
    cors.add(app.router.add_get('/tools/{name}', get_tools_handler))
    cors.add(app.router.add_post('/call/{service}/{tool}', call_tool_handler))


def create_app(service: MCPService) -> web.Application:
    app = web.Application(middlewares=[logging_middleware])
    app[SERVICE_KEY] = service
    setup_routes(app)
    return app
