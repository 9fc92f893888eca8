"""
Transport sessions for supervised MCP servers

One session per transport mode:
  - PipeSession: child process with stdio pipes (no health endpoint)
  - LocalPortSession: child process serving HTTP on a local port
  - EventStreamSession: push-style event stream endpoint

Every session exposes its output and lifecycle as an event channel
(`events()`), which ends after a CLOSED event.
"""

import asyncio
import logging
import socket
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Dict, Optional

import aiohttp

from .errors import HealthCheckTimeout, LaunchError, TransportError
from .mcp_config import ServerConfig, ServerMode, Timings, build_server_env
from .retry import RetryExhausted, retry_async

logger = logging.getLogger(__name__)

OUTPUT_BUFFER_LINES = 200


class EventKind(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    OPEN = "open"
    MESSAGE = "message"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    CLOSED = "closed"


@dataclass
class TransportEvent:
    kind: EventKind
    data: str = ""


class TransportSession(ABC):
    """Base class: event channel plus captured output"""

    def __init__(self, name: str, config: ServerConfig, timings: Optional[Timings] = None):
        self.name = name
        self.config = config
        self.timings = timings or Timings()
        self._events: "asyncio.Queue[TransportEvent]" = asyncio.Queue()
        self._output: deque = deque(maxlen=OUTPUT_BUFFER_LINES)
        self._closed = False

    def _emit(self, kind: EventKind, data: str = "") -> None:
        if self._closed:
            return
        if kind in (EventKind.STDOUT, EventKind.STDERR):
            self._output.append(data)
        if kind == EventKind.CLOSED:
            self._closed = True
        self._events.put_nowait(TransportEvent(kind, data))

    async def events(self) -> AsyncIterator[TransportEvent]:
        """Consume lifecycle and output events until the session closes"""
        while True:
            event = await self._events.get()
            yield event
            if event.kind == EventKind.CLOSED:
                return

    @property
    def closed(self) -> bool:
        return self._closed

    def captured_output(self) -> str:
        return "\n".join(self._output)

    @property
    @abstractmethod
    def handle(self):
        """Underlying process or stream response"""

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Spawn or dial; the server counts as registered once this returns"""

    @abstractmethod
    async def wait_ready(self) -> None:
        """Block until the server is ready, raising on failure"""

    @abstractmethod
    async def stop(self) -> None:
        ...


class _ProcessSession(TransportSession):
    """Shared child-process plumbing for pipe and local-port sessions"""

    def __init__(self, name: str, config: ServerConfig, timings: Optional[Timings] = None):
        super().__init__(name, config, timings)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._readers: list = []
        self._waiter: Optional[asyncio.Task] = None

    @property
    def handle(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _spawn(self, extra_env: Optional[Dict[str, str]] = None, stdin_pipe: bool = True) -> None:
        env = build_server_env(self.config)
        if extra_env:
            env.update(extra_env)
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE if stdin_pipe else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise LaunchError(f"Failed to spawn '{self.config.command}': {e}", self.name) from e

        logger.info(f"[{self.name}] Spawned '{self.config.command}' (PID={self._process.pid})")
        self._readers = [
            asyncio.create_task(self._read_stream(self._process.stdout, EventKind.STDOUT)),
            asyncio.create_task(self._read_stream(self._process.stderr, EventKind.STDERR)),
        ]
        self._waiter = asyncio.create_task(self._wait_exit())

    async def _read_stream(self, stream: Optional[asyncio.StreamReader], kind: EventKind) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            self._emit(kind, line.decode("utf-8", errors="replace").rstrip())

    async def _wait_exit(self) -> None:
        code = await self._process.wait()
        # drain pipes so exit diagnostics are captured before CLOSED
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._emit(EventKind.CLOSED, f"exited with code {code}")

    def _exit_error(self, phase: str) -> LaunchError:
        output = self.captured_output()
        message = f"Process exited with code {self.returncode} {phase}"
        if output:
            message += f": {output[-1000:]}"
        return LaunchError(message, self.name)

    async def stop(self) -> None:
        proc = self._process
        if proc is None:
            return
        if proc.returncode is None:
            try:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.timings.stop_grace)
                except asyncio.TimeoutError:
                    logger.debug(f"[{self.name}] Did not exit after SIGTERM, killing")
                    proc.kill()
                    await proc.wait()
            except ProcessLookupError:
                pass
        if self._waiter is not None:
            await asyncio.gather(self._waiter, return_exceptions=True)
        logger.info(f"[{self.name}] Process stopped (code {proc.returncode})")


class PipeSession(_ProcessSession):
    """stdio server: registered on spawn, ready after a fixed settle interval"""

    async def start(self) -> None:
        logger.info(f"Starting {self.name} in stdio mode...")
        await self._spawn(stdin_pipe=True)

    async def wait_ready(self) -> None:
        # no health endpoint; give the process time to crash if it is going to
        await asyncio.sleep(self.timings.settle_interval)
        if not self.is_alive:
            if self._waiter is not None:
                await asyncio.gather(self._waiter, return_exceptions=True)
            raise self._exit_error("during initialization")


class LocalPortSession(_ProcessSession):
    """HTTP server on a local port: ready once the health endpoint returns 200"""

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def health_url(self) -> str:
        return f"http://127.0.0.1:{self.port}{self.config.health_path}"

    async def start(self) -> None:
        logger.info(f"Starting {self.name} in http mode on port {self.port}...")
        if not port_available(self.port):
            raise LaunchError(f"Port {self.port} is already in use", self.name)
        port = str(self.port)
        await self._spawn(extra_env={"PORT": port, "MCP_SERVER_PORT": port}, stdin_pipe=False)

    async def _check_health(self, http: aiohttp.ClientSession) -> None:
        if not self.is_alive:
            raise self._exit_error("before becoming healthy")
        try:
            async with http.get(self.health_url) as response:
                if response.status != 200:
                    raise TransportError(f"Health check returned HTTP {response.status}", self.name)
        except aiohttp.ClientError as e:
            raise TransportError(f"Health check failed: {e}", self.name) from e

    async def wait_ready(self) -> None:
        interval = self.timings.health_interval
        timeout = aiohttp.ClientTimeout(total=max(interval, 1.0))
        async with aiohttp.ClientSession(timeout=timeout) as http:
            try:
                await retry_async(
                    lambda: self._check_health(http),
                    attempts=self.timings.health_attempts,
                    delay=interval,
                    retryable=lambda e: not isinstance(e, LaunchError),
                    label=f"health check for {self.name}",
                )
            except RetryExhausted as e:
                await self.stop()
                message = (
                    f"Server did not become healthy at {self.health_url} "
                    f"after {e.attempts} attempts"
                )
                output = self.captured_output()
                if output:
                    message += f". Output:\n{output[-2000:]}"
                raise HealthCheckTimeout(message, self.name) from e.last_error
            except LaunchError:
                await self.stop()
                raise
        logger.info(f"[{self.name}] Health check passed on port {self.port}")


class EventStreamSession(TransportSession):
    """Push-style event stream; ready on open, reconnects on drop"""

    def __init__(self, name: str, config: ServerConfig, timings: Optional[Timings] = None):
        super().__init__(name, config, timings)
        self._http: Optional[aiohttp.ClientSession] = None
        self._response: Optional[aiohttp.ClientResponse] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def endpoint(self) -> str:
        return self.config.sse_options.endpoint

    @property
    def reconnect_interval(self) -> float:
        reconnect_ms = self.config.sse_options.reconnect_timeout
        if reconnect_ms is None:
            return self.timings.reconnect_interval
        return reconnect_ms / 1000.0

    @property
    def handle(self) -> Optional[aiohttp.ClientResponse]:
        return self._response

    @property
    def is_alive(self) -> bool:
        return self._response is not None and not self._response.closed and not self._closed

    async def start(self) -> None:
        logger.info(f"Starting {self.name} in SSE mode ({self.endpoint})...")
        self._http = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timings.connect_timeout)
        )

    async def _open(self) -> None:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        headers.update(self.config.sse_options.headers)
        response = await self._http.get(self.endpoint, headers=headers)
        if response.status >= 300:
            body = await response.text()
            response.release()
            raise LaunchError(
                f"Event stream returned HTTP {response.status}: {body[:200]}", self.name
            )
        self._response = response
        self._emit(EventKind.OPEN, self.endpoint)

    async def wait_ready(self) -> None:
        try:
            await asyncio.wait_for(self._open(), timeout=self.timings.connect_timeout)
        except asyncio.TimeoutError as e:
            await self.stop()
            raise HealthCheckTimeout(
                f"Server {self.name} failed to open event stream within "
                f"{self.timings.connect_timeout}s", self.name
            ) from e
        except aiohttp.ClientError as e:
            await self.stop()
            raise LaunchError(f"Failed to connect to {self.endpoint}: {e}", self.name) from e
        except LaunchError:
            await self.stop()
            raise
        self._pump_task = asyncio.create_task(self._pump())
        logger.info(f"[{self.name}] Event stream open")

    async def _read_events(self) -> None:
        data_lines = []
        async for raw in self._response.content:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                if data_lines:
                    self._emit(EventKind.MESSAGE, "\n".join(data_lines))
                    data_lines = []
                continue
            if line.startswith(":"):
                continue
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())

    async def _reconnect(self) -> bool:
        attempts = self.timings.reconnect_attempts
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(self.reconnect_interval)
            if self._stopping:
                return False
            self._emit(EventKind.RECONNECTING, f"attempt {attempt}/{attempts}")
            try:
                await asyncio.wait_for(self._open(), timeout=self.timings.connect_timeout)
                logger.info(f"[{self.name}] Reconnected on attempt {attempt}/{attempts}")
                return True
            except (aiohttp.ClientError, asyncio.TimeoutError, LaunchError) as e:
                logger.debug(f"[{self.name}] Reconnect attempt {attempt}/{attempts} failed: {e}")
            except Exception as e:
                logger.error(f"[{self.name}] Reconnect attempt {attempt}/{attempts} failed: {type(e).__name__}: {e}")
        return False

    async def _pump(self) -> None:
        while not self._stopping:
            try:
                await self._read_events()
                reason = "stream ended"
            except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as e:
                reason = str(e) or type(e).__name__
            except Exception as e:
                logger.error(f"[{self.name}] Event stream reader failed: {type(e).__name__}: {e}")
                reason = f"{type(e).__name__}: {e}"
            if self._stopping:
                return
            logger.error(f"[{self.name}] Event stream dropped: {reason}")
            self._release_response()
            if not await self._reconnect():
                if not self._stopping:
                    self._emit(
                        EventKind.ERROR,
                        f"connection lost after {self.timings.reconnect_attempts} reconnect attempts",
                    )
                    await self._close_http()
                    self._emit(EventKind.CLOSED, reason)
                return

    def _release_response(self) -> None:
        if self._response is not None:
            self._response.close()
            self._response = None

    async def _close_http(self) -> None:
        self._release_response()
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def stop(self) -> None:
        self._stopping = True
        task = self._pump_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._close_http()
        self._emit(EventKind.CLOSED, "stopped")
        logger.info(f"[{self.name}] Event stream closed")


def port_available(port: int, host: str = "127.0.0.1") -> bool:
    """True when nothing is bound to host:port"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def create_session(name: str, config: ServerConfig, timings: Optional[Timings] = None) -> TransportSession:
    """Pick the session class for the configured transport mode"""
    if config.mode == ServerMode.STDIO:
        return PipeSession(name, config, timings)
    if config.mode == ServerMode.HTTP:
        return LocalPortSession(name, config, timings)
    if config.mode == ServerMode.SSE:
        return EventStreamSession(name, config, timings)
    raise LaunchError(f"Unsupported server mode: {config.mode}", name)
