"""
MCP Service: aggregates every running server's tools into one namespace

Lifecycle:
    UNINITIALIZED -> INITIALIZING -> READY | ERROR
    READY -> SHUTTING_DOWN -> UNINITIALIZED

Concurrent initialize() calls share one in-flight task, so servers are never
spawned twice.
"""

import asyncio
import logging
import signal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from .client_registry import ClientRegistry
from .errors import (
    DuplicateToolError,
    InitializationError,
    ServerDisabledError,
    ServerNotFoundError,
    ServerNotRunningError,
)
from .logging_config import debug_enabled_from_env, set_debug
from .mcp_config import MCPServersConfig, Timings, load_mcp_config, parse_mcp_config
from .supervisor import ServerSupervisor
from .tools import ToolCallResult, ToolProxy

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"
    SHUTTING_DOWN = "shutting_down"


class DuplicatePolicy(str, Enum):
    SHADOW = "shadow"  # last registered server wins
    ERROR = "error"


class MCPService:
    def __init__(
        self,
        config: Union[MCPServersConfig, Dict[str, Any], None] = None,
        supervisor: Optional[ServerSupervisor] = None,
        registry: Optional[ClientRegistry] = None,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.SHADOW,
        timings: Optional[Timings] = None,
        config_path: Union[str, Path, None] = None,
    ):
        self.timings = timings or Timings()
        self.supervisor = supervisor or ServerSupervisor(timings=self.timings)
        self.registry = registry or ClientRegistry(timings=self.timings)
        self.duplicate_policy = DuplicatePolicy(duplicate_policy)
        self.config_path = config_path
        self._config_loaded = False
        if config is not None:
            self.configure(config)

        self.state = ServiceState.UNINITIALIZED
        self.failures: Dict[str, str] = {}
        self._server_tools: Dict[str, Dict[str, ToolProxy]] = {}
        self._init_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self.shutdown_event: Optional[asyncio.Event] = None
        self.supervisor.add_removal_listener(self._on_server_removed)

    # ===== CONFIGURATION =====

    def configure(self, config: Union[MCPServersConfig, Dict[str, Any]]) -> None:
        if not isinstance(config, MCPServersConfig):
            config = parse_mcp_config(config)
        self.supervisor.set_config(config)
        self._config_loaded = True

    def ensure_config(self) -> MCPServersConfig:
        """Load the configuration file on first use; ConfigError is fatal"""
        if not self._config_loaded:
            logger.info(f"Loading config from {self.config_path or 'default location'}")
            self.configure(load_mcp_config(self.config_path))
        return self.supervisor.get_config()

    @property
    def is_initialized(self) -> bool:
        return self.state == ServiceState.READY

    # ===== INITIALIZATION =====

    async def initialize(self, debug: bool = False) -> None:
        if debug or debug_enabled_from_env():
            set_debug(True)
        if self.state == ServiceState.READY:
            logger.debug("MCP service already initialized")
            return

        task = self._init_task
        if task is None:
            task = asyncio.create_task(self._initialize())
            self._init_task = task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def _initialize(self) -> None:
        self.state = ServiceState.INITIALIZING
        self.failures = {}
        logger.info("Starting MCP initialization...")
        try:
            config = self.ensure_config()
            outcomes = await self.supervisor.start_all()
            for name, outcome in outcomes.items():
                if not outcome.started and not outcome.skipped:
                    self.failures[name] = outcome.error or "failed to start"

            started = [name for name, outcome in outcomes.items() if outcome.started]
            results = await asyncio.gather(*(self._load_server(name) for name in started), return_exceptions=True)
            for name, result in zip(started, results):
                if isinstance(result, BaseException):
                    reason = str(result) or type(result).__name__
                    logger.error(f"Failed to initialize server {name}: {reason}")
                    self.failures[name] = reason
                    await self._drop_server(name)

            if not self._server_tools:
                raise InitializationError(self.failures)
        except asyncio.CancelledError:
            if self.state == ServiceState.INITIALIZING:
                self.state = ServiceState.UNINITIALIZED
            raise
        except Exception as e:
            if self.state == ServiceState.INITIALIZING:
                self.state = ServiceState.ERROR
            logger.error(f"MCP initialization failed: {e}")
            raise

        if self.state != ServiceState.INITIALIZING:
            # cleanup() ran while we were starting up
            return
        self.state = ServiceState.READY
        ready = [name for name in config.mcp_servers if name in self._server_tools]
        logger.info(
            f"MCP service initialization complete: {len(ready)} servers ready "
            f"({', '.join(ready)}), {sum(len(t) for t in self._server_tools.values())} tools"
        )

    async def _load_server(self, name: str) -> Dict[str, ToolProxy]:
        """Client, catalogue and proxies for one started server"""
        config = self.supervisor.get_server_info(name)
        await self.registry.ensure_client(name, config)
        descriptors = await self.registry.list_tools(name)
        proxies = {d.name: ToolProxy(name, d, self.execute_function) for d in descriptors}
        if not self.supervisor.is_running(name):
            await self.registry.close(name)
            raise ServerNotRunningError(name)
        self._server_tools[name] = proxies
        logger.info(f"[{name}] Registered {len(proxies)} tools")
        return proxies

    async def _drop_server(self, name: str) -> None:
        self._server_tools.pop(name, None)
        await self.registry.close(name)
        await self.supervisor.stop(name)

    def _on_server_removed(self, name: str, reason: str) -> None:
        proxies = self._server_tools.pop(name, None)
        if proxies is not None:
            logger.info(f"Unregistered {len(proxies)} tools of {name} ({reason})")
        task = asyncio.create_task(self.registry.close(name))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ===== TOOLS =====

    async def get_tools(self, server_name: Optional[str] = None, debug: bool = False) -> Dict[str, ToolProxy]:
        if debug:
            set_debug(True)
        if server_name is not None:
            # lookup failures are reported before any server is spawned
            server_config = self.ensure_config().mcp_servers.get(server_name)
            if server_config is None:
                logger.error(f"Failed to get MCP tools: server {server_name} not found in configuration")
                raise ServerNotFoundError(server_name)
            if server_config.disabled:
                logger.error(f"Failed to get MCP tools: server {server_name} is disabled")
                raise ServerDisabledError(server_name)
        if self.state != ServiceState.READY:
            logger.debug("MCP service not initialized, initializing now...")
            await self.initialize(debug=debug)

        config = self.supervisor.get_config()
        if server_name is not None:
            server_config = config.mcp_servers.get(server_name)
            if server_config is None:
                raise ServerNotFoundError(server_name)
            if server_config.disabled:
                raise ServerDisabledError(server_name)
            if not self.supervisor.is_running(server_name):
                raise ServerNotRunningError(server_name)
            return dict(await self._server_tools_for(server_name))

        running = [name for name in config.mcp_servers if self.supervisor.is_running(name)]
        logger.debug(f"Found {len(running)} running servers: {', '.join(running)}")

        merged: Dict[str, ToolProxy] = {}
        for name in running:
            try:
                proxies = await self._server_tools_for(name)
            except Exception as e:
                logger.error(f"Failed to get tools for server {name}: {e}")
                continue
            for tool_name, proxy in proxies.items():
                existing = merged.get(tool_name)
                if existing is not None:
                    if self.duplicate_policy == DuplicatePolicy.ERROR:
                        raise DuplicateToolError(tool_name, existing.server_name, name)
                    logger.debug(f"Tool {tool_name} from {name} shadows the one from {existing.server_name}")
                merged[tool_name] = proxy
        return merged

    async def _server_tools_for(self, name: str) -> Dict[str, ToolProxy]:
        proxies = self._server_tools.get(name)
        if proxies is None:
            logger.debug(f"No tools found for server {name}, requesting...")
            proxies = await self._load_server(name)
        return proxies

    async def execute_function(self, server_name: str, tool_name: str, args: Dict[str, Any]) -> ToolCallResult:
        """Direct invocation; arguments are not validated again here"""
        if not self.registry.has_client(server_name):
            raise ServerNotRunningError(server_name)
        try:
            return await self.registry.call_tool(server_name, tool_name, args or {})
        except ServerNotRunningError:
            raise
        except Exception as e:
            logger.error(f"Failed to execute function {tool_name} on {server_name}: {e}")
            return ToolCallResult.error(f"Error executing {tool_name}: {e}")

    # ===== STATUS / SHUTDOWN =====

    def status(self) -> Dict[str, Any]:
        servers = self.supervisor.status()
        for name, info in servers.items():
            info["tools"] = len(self._server_tools.get(name, {}))
            info["client"] = self.registry.has_client(name)
            if name in self.failures:
                info["error"] = self.failures[name]
        return {
            "state": self.state.value,
            "servers": servers,
            "total_tools": sum(len(t) for t in self._server_tools.values()),
        }

    def tool_names(self, server_name: str) -> List[str]:
        return list(self._server_tools.get(server_name, {}))

    async def cleanup(self) -> None:
        """Stop everything; safe to call repeatedly and before initialize"""
        logger.info("Cleaning up MCP service")
        self.state = ServiceState.SHUTTING_DOWN

        task = self._init_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._init_task = None

        await self.supervisor.stop_all()
        errors = await self.registry.close_all()
        for name, error in errors.items():
            logger.error(f"Error cleaning up server {name}: {error}")
        pending = [t for t in self._background if t is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._server_tools.clear()
        self.state = ServiceState.UNINITIALIZED
        logger.info("MCP service cleanup complete")

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> asyncio.Event:
        """Run cleanup() on SIGINT/SIGTERM; the returned event is set once it finishes"""
        loop = loop or asyncio.get_running_loop()
        self.shutdown_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")
        return self.shutdown_event

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"{sig.name} received. Shutting down gracefully...")
        task = asyncio.create_task(self._handle_shutdown())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _handle_shutdown(self) -> None:
        try:
            await self.cleanup()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
        finally:
            if self.shutdown_event is not None:
                self.shutdown_event.set()


_service: Optional[MCPService] = None


def get_service() -> MCPService:
    """Process-wide default service"""
    global _service
    if _service is None:
        _service = MCPService()
    return _service


def reset_service() -> None:
    global _service
    _service = None
