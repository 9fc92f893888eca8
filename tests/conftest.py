"""Shared fixtures: fast timings, fake transport sessions and a fake MCP connector."""

import asyncio
import logging
import socket
import sys
from collections import defaultdict
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from mcp import types

from mcp_bridge.client_registry import ClientRegistry
from mcp_bridge.logging_config import LOGGER_NAME
from mcp_bridge.mcp_config import ServerConfig, Timings
from mcp_bridge.service import MCPService
from mcp_bridge.supervisor import ServerSupervisor
from mcp_bridge.transport import EventKind, TransportSession


@pytest.fixture
def timings():
    """Timings scaled down so failure paths finish in well under a second."""
    return Timings(
        settle_interval=0.05,
        health_interval=0.05,
        health_attempts=5,
        connect_timeout=2.0,
        reconnect_attempts=2,
        reconnect_interval=0.05,
        client_retries=3,
        client_connect_timeout=2.0,
        retry_delay=0.01,
        request_timeout=0.5,
        stop_grace=2.0,
    )


@pytest.fixture
def python_server():
    """Build a stdio ServerConfig that runs a python snippet."""
    def _make(code, **kwargs):
        return ServerConfig(command=sys.executable, args=["-c", code], **kwargs)
    return _make


@pytest.fixture
def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def restore_bridge_logger():
    """Remove handlers installed by configure_logging and restore the level after the test."""
    logger = logging.getLogger(LOGGER_NAME)
    before = list(logger.handlers)
    level = logger.level
    yield logger
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if handler not in before:
            logger.removeHandler(handler)
            handler.close()


async def wait_until(predicate, timeout=2.0):
    """Poll predicate() until true; fail the test on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def until():
    return wait_until


# ===== FAKE TRANSPORT SESSIONS =====


class FakeSession(TransportSession):
    """In-memory transport session driven by the test."""

    def __init__(self, name, config, timings=None, fail_start=None, fail_ready=None,
                 ready_delay=0.0, exit_during_ready=False, fail_stop=None, stop_delay=0.0):
        super().__init__(name, config, timings)
        self.fail_start = fail_start
        self.fail_ready = fail_ready
        self.ready_delay = ready_delay
        self.exit_during_ready = exit_during_ready
        self.fail_stop = fail_stop
        self.stop_delay = stop_delay
        self.started = False
        self.stopped = False
        self.exited = False

    @property
    def handle(self):
        return self

    @property
    def is_alive(self):
        return self.started and not self.closed

    async def start(self):
        self.started = True
        if self.fail_start is not None:
            raise self.fail_start

    async def wait_ready(self):
        await asyncio.sleep(self.ready_delay)
        if self.exit_during_ready:
            self.crash("exited with code 1")
            await asyncio.sleep(0.05)
        if self.fail_ready is not None:
            raise self.fail_ready

    async def stop(self):
        self.stopped = True
        await asyncio.sleep(self.stop_delay)
        self.exited = True
        self._emit(EventKind.CLOSED, "stopped")
        if self.fail_stop is not None:
            raise self.fail_stop

    def crash(self, reason="exited with code 1"):
        self._emit(EventKind.STDERR, "fatal: something broke")
        self._emit(EventKind.CLOSED, reason)


class FakeFleet:
    """session_factory for ServerSupervisor that records every session it makes."""

    def __init__(self):
        self.behaviour = {}
        self.sessions = defaultdict(list)

    def configure(self, name, **behaviour):
        self.behaviour[name] = behaviour
        return self

    def created(self, name):
        return len(self.sessions[name])

    def last(self, name):
        return self.sessions[name][-1]

    def __call__(self, name, config, timings=None):
        session = FakeSession(name, config, timings, **self.behaviour.get(name, {}))
        self.sessions[name].append(session)
        return session


@pytest.fixture
def fleet():
    return FakeFleet()


# ===== FAKE MCP CLIENT SIDE =====


def make_tool(name, schema=None, description=""):
    return types.Tool(
        name=name,
        description=description or f"{name} tool",
        inputSchema=schema or {"type": "object", "properties": {}},
    )


def make_client_session(tools=(), text="ok"):
    session = MagicMock()
    session.list_tools = AsyncMock(return_value=types.ListToolsResult(tools=list(tools)))
    session.call_tool = AsyncMock(return_value=types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=False,
    ))
    return session


class FakeConnector:
    """Connector for ClientRegistry that hands out prepared sessions."""

    def __init__(self):
        self.sessions = {}
        self.failures = defaultdict(list)
        self.always_fail = {}
        self.exit_errors = {}
        self.attempts = defaultdict(int)
        self.closed = []

    def add(self, name, tools=(), text="ok"):
        session = make_client_session(tools, text)
        self.sessions[name] = session
        return session

    def __call__(self, name, config):
        return self._open(name, config)

    @asynccontextmanager
    async def _open(self, name, config):
        self.attempts[name] += 1
        if name in self.always_fail:
            raise self.always_fail[name]
        if self.failures[name]:
            raise self.failures[name].pop(0)
        session = self.sessions.get(name) or self.add(name)
        try:
            yield session
        finally:
            self.closed.append(name)
            if name in self.exit_errors:
                raise self.exit_errors[name]


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def tool_factory():
    return make_tool


@pytest.fixture
def build_service(fleet, connector, timings):
    """MCPService wired to the fake fleet and connector."""
    def _build(config, **kwargs):
        return MCPService(
            config=config,
            supervisor=ServerSupervisor(timings=timings, session_factory=fleet),
            registry=ClientRegistry(timings=timings, connector=connector),
            timings=timings,
            **kwargs,
        )
    return _build
