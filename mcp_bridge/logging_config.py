"""
Logging setup for the MCP bridge

Errors are always emitted. Info and debug records only pass when debug is
switched on explicitly or through the DEBUG namespace list (DEBUG=mcp).
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = "mcp_bridge"
DEBUG_NAMESPACES = {"*", "mcp", "mcp:*"}
DEFAULT_LOG_FILE = Path("logs") / "mcp-tools.log"
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s - %(message)s'


def debug_enabled_from_env(value: Optional[str] = None) -> bool:
    """Check the DEBUG environment variable for an mcp namespace"""
    raw = os.environ.get("DEBUG", "") if value is None else value
    namespaces = {part.strip() for part in raw.split(",") if part.strip()}
    return bool(namespaces & DEBUG_NAMESPACES)


class DebugGateFilter(logging.Filter):
    """Let errors through unconditionally, everything else only in debug mode"""

    def __init__(self, debug: bool = False):
        super().__init__()
        self.debug = debug

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR:
            return True
        return self.debug or debug_enabled_from_env()


def configure_logging(debug: bool = False, log_file: Union[str, Path, None] = None) -> logging.Logger:
    """Install the gated console (and optional file) handler on the package logger"""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    for handler in list(logger.handlers):
        if getattr(handler, "_mcp_bridge_handler", False):
            logger.removeHandler(handler)
            handler.close()

    gate = DebugGateFilter(debug)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console.addFilter(gate)
    console._mcp_bridge_handler = True
    logger.addHandler(console)

    if log_file is None and os.environ.get("MCP_LOG_FILE", "").lower() in ("1", "true", "yes"):
        log_file = DEFAULT_LOG_FILE
    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(gate)
        file_handler._mcp_bridge_handler = True
        logger.addHandler(file_handler)

    return logger


def set_debug(debug: bool) -> None:
    """Flip the debug gate; installs the gated handler when library callers never did"""
    logger = logging.getLogger(LOGGER_NAME)
    gates = [
        flt
        for handler in logger.handlers
        for flt in handler.filters
        if isinstance(flt, DebugGateFilter)
    ]
    if not gates:
        if debug:
            configure_logging(debug=True)
        return
    for flt in gates:
        flt.debug = debug
