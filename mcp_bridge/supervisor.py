"""
Server supervisor: starts, health-checks and tears down upstream servers

The table of running handles is the single source of truth for whether a
server is running. A handle is removed on stop, on failed startup, and when
its transport session closes on its own (process exit, stream lost).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .errors import MCPBridgeError
from .mcp_config import MCPServersConfig, ServerConfig, Timings, parse_mcp_config
from .transport import EventKind, TransportSession, create_session

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str, ServerConfig, Timings], TransportSession]
RemovalListener = Callable[[str, str], None]


class HealthStatus(str, Enum):
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    STOPPED = "stopped"


@dataclass
class RunningServer:
    """Live handle for a started server, owned by the supervisor"""
    name: str
    config: ServerConfig
    session: TransportSession
    started_at: float
    status: HealthStatus = HealthStatus.STARTING
    stopping: bool = False
    monitor: Optional[asyncio.Task] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        info = {
            "name": self.name,
            "mode": self.config.mode.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "uptime": round(time.time() - self.started_at, 1),
        }
        pid = getattr(self.session, "pid", None)
        if pid is not None:
            info["pid"] = pid
        if self.config.port is not None:
            info["port"] = self.config.port
        return info


@dataclass
class StartOutcome:
    """Result of one start attempt"""
    name: str
    started: bool
    skipped: bool = False
    error: Optional[str] = None


def all_failed(outcomes: Dict[str, StartOutcome]) -> bool:
    """True when no server in the batch came up"""
    return not any(outcome.started for outcome in outcomes.values())


class ServerSupervisor:
    """Owns the fleet of transport sessions"""

    def __init__(
        self,
        config: Optional[MCPServersConfig] = None,
        timings: Optional[Timings] = None,
        session_factory: SessionFactory = create_session,
    ):
        self._config = config or MCPServersConfig(mcpServers={})
        self._timings = timings or Timings()
        self._session_factory = session_factory
        self._running: Dict[str, RunningServer] = {}
        self._startups: Dict[str, asyncio.Task] = {}
        self._stops: Dict[str, asyncio.Task] = {}
        self._removal_listeners: List[RemovalListener] = []

    # ===== CONFIGURATION =====

    def set_config(self, config: Union[MCPServersConfig, Dict[str, Any]]) -> None:
        if not isinstance(config, MCPServersConfig):
            config = parse_mcp_config(config)
        self._config = config
        stale = set(self._running) - set(config.mcp_servers)
        if stale:
            logger.info(f"Servers no longer configured but still running: {sorted(stale)}")

    def get_config(self) -> MCPServersConfig:
        return self._config

    def get_server_info(self, name: str) -> Optional[ServerConfig]:
        return self._config.mcp_servers.get(name)

    def add_removal_listener(self, listener: RemovalListener) -> None:
        """Called with (name, reason) when a server goes away on its own"""
        self._removal_listeners.append(listener)

    # ===== QUERIES =====

    def is_running(self, name: str) -> bool:
        return name in self._running

    def running_names(self) -> Set[str]:
        return set(self._running)

    def get_handle(self, name: str) -> Optional[RunningServer]:
        return self._running.get(name)

    def status(self) -> Dict[str, Dict[str, Any]]:
        result = {}
        for name, cfg in self._config.mcp_servers.items():
            handle = self._running.get(name)
            if handle is not None:
                result[name] = handle.to_dict()
            else:
                result[name] = {
                    "name": name,
                    "mode": cfg.mode.value,
                    "status": "disabled" if cfg.disabled else HealthStatus.STOPPED.value,
                }
        return result

    # ===== STARTUP =====

    async def start_all(self, configs: Optional[Dict[str, ServerConfig]] = None) -> Dict[str, StartOutcome]:
        """Start every enabled server concurrently; one failure never aborts the others"""
        if configs is not None:
            self.set_config(MCPServersConfig(mcpServers=configs))

        outcomes: Dict[str, StartOutcome] = {}
        pending: List[str] = []
        for name, cfg in self._config.mcp_servers.items():
            if cfg.disabled:
                logger.info(f"Server {name} is disabled, skipping...")
                outcomes[name] = StartOutcome(name, started=False, skipped=True, error="disabled")
                continue
            if self.is_running(name):
                logger.info(f"Server {name} is already running")
                outcomes[name] = StartOutcome(name, started=True)
                continue
            pending.append(name)

        results = await asyncio.gather(*(self.start(name) for name in pending), return_exceptions=True)
        for name, result in zip(pending, results):
            if isinstance(result, BaseException):
                reason = str(result) or type(result).__name__
                logger.error(f"Error starting server {name}: {reason}")
                outcomes[name] = StartOutcome(name, started=False, error=reason)
            else:
                outcomes[name] = result
                if not result.started:
                    logger.error(f"Server {name} failed to start, continuing with other servers")

        started = [name for name, outcome in outcomes.items() if outcome.started]
        logger.info(f"Started {len(started)}/{len(outcomes)} servers: {', '.join(started) or 'none'}")
        return outcomes

    async def start(self, name: str) -> StartOutcome:
        """Start one server; concurrent calls for the same name share one attempt"""
        config = self.get_server_info(name)
        if config is None:
            logger.error(f"Server {name} not found in configuration")
            return StartOutcome(name, started=False, error="not found in configuration")
        if config.disabled:
            return StartOutcome(name, started=False, skipped=True, error="disabled")
        stopping = self._stops.get(name)
        if stopping is not None:
            logger.debug(f"Server {name} is stopping, waiting for it to exit")
            await asyncio.shield(stopping)
        if self.is_running(name) and name not in self._startups:
            logger.debug(f"Server {name} is already running")
            return StartOutcome(name, started=True)

        task = self._startups.get(name)
        if task is not None:
            logger.debug(f"Server {name} is already starting, waiting for completion")
        else:
            logger.debug(f"Starting server {name}...")
            task = asyncio.create_task(self._start_server(name, config))
            self._startups[name] = task
            task.add_done_callback(lambda t, n=name: self._forget_startup(n, t))
        return await asyncio.shield(task)

    def _forget_startup(self, name: str, task: asyncio.Task) -> None:
        if self._startups.get(name) is task:
            del self._startups[name]

    async def _start_server(self, name: str, config: ServerConfig) -> StartOutcome:
        session = self._session_factory(name, config, self._timings)
        try:
            await session.start()
        except Exception as e:
            logger.error(f"Failed to start server {name}: {e}")
            return StartOutcome(name, started=False, error=str(e))

        handle = RunningServer(name=name, config=config, session=session, started_at=time.time())
        self._running[name] = handle
        handle.monitor = asyncio.create_task(self._monitor(handle))
        logger.info(f"[{name}] Server registered in {config.mode.value} mode")

        try:
            await session.wait_ready()
        except asyncio.CancelledError:
            await self._discard(handle)
            raise
        except Exception as e:
            reason = str(e) if isinstance(e, MCPBridgeError) else f"{type(e).__name__}: {e}"
            logger.error(f"Failed to start server {name}: {reason}")
            await self._discard(handle)
            return StartOutcome(name, started=False, error=reason)

        if self._running.get(name) is not handle:
            logger.error(f"[{name}] Server registration lost during initialization")
            await self._discard(handle)
            return StartOutcome(name, started=False, error="server exited during initialization")

        handle.status = HealthStatus.READY
        logger.info(f"[{name}] Server initialization complete")
        return StartOutcome(name, started=True)

    async def _monitor(self, handle: RunningServer) -> None:
        name = handle.name
        reason = "session closed"
        async for event in handle.session.events():
            if event.kind == EventKind.STDOUT:
                logger.info(f"[{name}] {event.data}")
            elif event.kind == EventKind.STDERR:
                logger.info(f"[{name}] stderr: {event.data}")
            elif event.kind == EventKind.MESSAGE:
                logger.debug(f"[{name}] event: {event.data}")
            elif event.kind == EventKind.OPEN:
                if handle.status == HealthStatus.DEGRADED:
                    logger.info(f"[{name}] Connection restored")
                    handle.status = HealthStatus.READY
            elif event.kind == EventKind.RECONNECTING:
                logger.info(f"[{name}] Reconnecting ({event.data})")
                handle.status = HealthStatus.DEGRADED
            elif event.kind == EventKind.ERROR:
                logger.error(f"[{name}] Transport error: {event.data}")
                reason = event.data
            elif event.kind == EventKind.CLOSED:
                logger.info(f"[{name}] Server closed: {event.data}")
                if reason == "session closed":
                    reason = event.data

        if self._running.get(name) is handle and not handle.stopping:
            del self._running[name]
            handle.status = HealthStatus.STOPPED
            logger.error(f"Server {name} removed: {reason}")
            self._notify_removed(name, reason)

    def _notify_removed(self, name: str, reason: str) -> None:
        for listener in list(self._removal_listeners):
            try:
                listener(name, reason)
            except Exception as e:
                logger.error(f"Removal listener failed for {name}: {e}")

    async def _discard(self, handle: RunningServer) -> None:
        """Tear down a handle that never became ready"""
        if self._running.get(handle.name) is handle:
            del self._running[handle.name]
        await self._teardown(handle)

    async def _teardown(self, handle: RunningServer) -> None:
        try:
            await handle.session.stop()
        except Exception as e:
            logger.error(f"Error stopping server {handle.name}: {e}")
        finally:
            handle.status = HealthStatus.STOPPED
            monitor = handle.monitor
            if monitor is not None and monitor is not asyncio.current_task():
                if not monitor.done():
                    # session.stop() emits CLOSED; give the monitor a moment to drain it
                    await asyncio.wait({monitor}, timeout=1.0)
                if not monitor.done():
                    monitor.cancel()
                await asyncio.gather(monitor, return_exceptions=True)

    # ===== SHUTDOWN =====

    async def stop(self, name: str) -> None:
        """Stop one server; failures are logged, never raised

        The handle stays registered until the session has exited, so a
        restart cannot race the old process for its port.
        """
        task = self._stops.get(name)
        if task is None:
            handle = self._running.get(name)
            if handle is None:
                return
            task = asyncio.create_task(self._stop_handle(handle))
            self._stops[name] = task
            task.add_done_callback(lambda t, n=name: self._forget_stop(n, t))
        await asyncio.shield(task)

    def _forget_stop(self, name: str, task: asyncio.Task) -> None:
        if self._stops.get(name) is task:
            del self._stops[name]

    async def _stop_handle(self, handle: RunningServer) -> None:
        handle.stopping = True
        await self._teardown(handle)
        if self._running.get(handle.name) is handle:
            del self._running[handle.name]
        logger.info(f"Server {handle.name} stopped")

    async def stop_all(self) -> None:
        """Stop everything concurrently and wait for all of it to settle"""
        startups = list(self._startups.values())
        for task in startups:
            task.cancel()
        if startups:
            await asyncio.gather(*startups, return_exceptions=True)

        names = list(self._running)
        results = await asyncio.gather(*(self.stop(name) for name in names), return_exceptions=True)
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"Error stopping server {name}: {result}")
