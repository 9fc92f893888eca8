"""
Protocol client registry: one live MCP ClientSession per running server

Each client lives inside its own owner task so the SDK's transport context
managers are entered and exited from the same task.
"""

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from .errors import CatalogueError, ServerNotRunningError, TransportError
from .mcp_config import ServerConfig, ServerMode, Timings, build_server_env
from .retry import RetryExhausted, retry_async
from .tools import ToolCallResult, ToolDescriptor

logger = logging.getLogger(__name__)

Connector = Callable[[str, ServerConfig], AsyncContextManager[ClientSession]]


def is_launcher_missing(error: BaseException) -> bool:
    """Launch commands like npx sometimes only resolve at execution time"""
    return isinstance(error, FileNotFoundError) or "ENOENT" in str(error)


@asynccontextmanager
async def open_client_session(name: str, config: ServerConfig) -> AsyncIterator[ClientSession]:
    """Open an initialized MCP client session for one server"""
    async with AsyncExitStack() as stack:
        if config.mode == ServerMode.STDIO:
            params = StdioServerParameters(
                command=config.command,
                args=list(config.args),
                env=build_server_env(config),
            )
            read, write = await stack.enter_async_context(stdio_client(params))
        elif config.mode == ServerMode.HTTP:
            url = f"http://127.0.0.1:{config.port}{config.mcp_path}"
            logger.debug(f"[{name}] Connecting to {url}")
            read, write, _ = await stack.enter_async_context(streamablehttp_client(url))
        else:
            sse = config.sse_options
            logger.debug(f"[{name}] Connecting to {sse.endpoint}")
            read, write = await stack.enter_async_context(
                sse_client(sse.endpoint, headers=dict(sse.headers) or None)
            )

        session = await stack.enter_async_context(ClientSession(read, write))
        await session.initialize()
        yield session


class LiveClient:
    """Owner task plus the session it holds open"""

    def __init__(self, name: str, session: ClientSession, task: asyncio.Task, closing: asyncio.Event):
        self.name = name
        self.session = session
        self.task = task
        self.closing = closing

    @property
    def alive(self) -> bool:
        return not self.task.done()


class ClientRegistry:
    def __init__(self, timings: Optional[Timings] = None, connector: Optional[Connector] = None):
        self._timings = timings or Timings()
        self._connector = connector or open_client_session
        self._clients: Dict[str, LiveClient] = {}
        self._connecting: Dict[str, asyncio.Task] = {}

    def get_client(self, name: str) -> Optional[ClientSession]:
        client = self._clients.get(name)
        if client is None or not client.alive:
            return None
        return client.session

    def has_client(self, name: str) -> bool:
        return self.get_client(name) is not None

    def names(self) -> List[str]:
        return [name for name, client in self._clients.items() if client.alive]

    # ===== CONNECT =====

    async def ensure_client(self, name: str, config: ServerConfig) -> ClientSession:
        """Return the live client for name, connecting first if needed"""
        session = self.get_client(name)
        if session is not None:
            return session

        task = self._connecting.get(name)
        if task is None:
            task = asyncio.create_task(self._connect_with_retry(name, config))
            self._connecting[name] = task
            task.add_done_callback(lambda t, n=name: self._forget_connect(n, t))
        return await asyncio.shield(task)

    def _forget_connect(self, name: str, task: asyncio.Task) -> None:
        if self._connecting.get(name) is task:
            del self._connecting[name]

    async def _connect_with_retry(self, name: str, config: ServerConfig) -> ClientSession:
        def on_error(error: BaseException, attempt: int) -> None:
            if is_launcher_missing(error):
                logger.debug(f"[{name}] Launcher not resolved yet (attempt {attempt}): {error}")
            else:
                logger.info(f"[{name}] Client connection attempt {attempt} failed: {error}")

        try:
            client = await retry_async(
                lambda: self._connect_once(name, config),
                attempts=self._timings.client_retries,
                delay=self._timings.retry_delay,
                timeout=self._timings.client_connect_timeout,
                label=f"{name} client connection",
                on_error=on_error,
            )
        except RetryExhausted as e:
            raise TransportError(f"Failed to create client for {name}: {e.last_error}", name) from e

        self._clients[name] = client
        logger.info(f"[{name}] Client connected")
        return client.session

    async def _connect_once(self, name: str, config: ServerConfig) -> LiveClient:
        loop = asyncio.get_running_loop()
        ready: asyncio.Future = loop.create_future()
        closing = asyncio.Event()
        task = asyncio.create_task(self._hold(name, config, ready, closing))
        try:
            session = await asyncio.shield(ready)
        except BaseException:
            # covers wait_for cancellation on timeout as well
            closing.set()
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        return LiveClient(name, session, task, closing)

    async def _hold(self, name: str, config: ServerConfig, ready: asyncio.Future, closing: asyncio.Event) -> None:
        try:
            async with self._connector(name, config) as session:
                if ready.done():
                    return
                ready.set_result(session)
                await closing.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
                return
            if not closing.is_set():
                logger.error(f"[{name}] Client connection lost: {e}")
                return
            raise
        finally:
            if not ready.done():
                ready.set_exception(TransportError(f"Client for {name} closed before initialization", name))
            client = self._clients.get(name)
            if client is not None and client.task is asyncio.current_task():
                del self._clients[name]

    # ===== REQUESTS =====

    def _require(self, name: str) -> ClientSession:
        session = self.get_client(name)
        if session is None:
            raise ServerNotRunningError(name)
        return session

    async def list_tools(self, name: str) -> List[ToolDescriptor]:
        """Fetch the tool catalogue, retrying with a per-attempt timeout"""
        session = self._require(name)
        try:
            result = await retry_async(
                session.list_tools,
                attempts=self._timings.client_retries,
                delay=self._timings.retry_delay,
                timeout=self._timings.request_timeout,
                label=f"{name} tools/list",
                on_error=lambda e, attempt: logger.info(f"[{name}] Failed to list tools (attempt {attempt}): {e}"),
            )
        except RetryExhausted as e:
            raise CatalogueError(f"Failed to list tools for {name}: {e.last_error}", name) from e

        tools = [ToolDescriptor.from_mcp(tool) for tool in result.tools]
        logger.debug(f"[{name}] Retrieved {len(tools)} tools: {[t.name for t in tools]}")
        return tools

    async def call_tool(self, name: str, tool_name: str, arguments: Dict[str, Any]) -> ToolCallResult:
        session = self._require(name)
        result = await session.call_tool(tool_name, arguments=arguments)
        return ToolCallResult.from_mcp(result)

    # ===== SHUTDOWN =====

    async def close(self, name: str) -> None:
        client = self._clients.pop(name, None)
        if client is None:
            return
        client.closing.set()
        try:
            await asyncio.wait_for(asyncio.shield(client.task), timeout=self._timings.stop_grace)
        except asyncio.TimeoutError:
            logger.info(f"[{name}] Client did not close in time, cancelling")
            client.task.cancel()
            await asyncio.gather(client.task, return_exceptions=True)
        logger.debug(f"[{name}] Client closed")

    async def close_all(self) -> Dict[str, str]:
        """Close every client; returns the errors keyed by server name"""
        for task in list(self._connecting.values()):
            task.cancel()
        names = list(self._clients)
        results = await asyncio.gather(*(self.close(name) for name in names), return_exceptions=True)
        errors = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"Error closing client {name}: {result}")
                errors[name] = str(result) or type(result).__name__
        return errors
