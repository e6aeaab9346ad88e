"""
Process-wide logging for the account creator service.

The pipeline loggers (``creator_rpc``, ``creator_signer``,
``creator_provisioning``, ``creator_api``, ``server``) all propagate to
the root logger configured here.  Operators pick between:

  - ``human``  one line per record, level coloured when stderr is a TTY
  - ``json``   one JSON object per line, for log shippers

A log file, when configured, always receives JSON so that submitted
transaction hashes can be grepped out reliably.

Secret keys never reach a log record; ``KeyPair.__repr__`` only shows
the public key.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# aiohttp logs every HTTP hit at DEBUG; asyncio logs slow callbacks.
_NOISY_LOGGERS = ("aiohttp.access", "asyncio")

_LEVEL_COLOURS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[1;31m",
}
_RESET = "\033[0m"


class _JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _HumanFormatter(logging.Formatter):
    """``12:00:01 [INFO   ] creator_rpc: ...`` with an optional traceback."""

    def __init__(self, colour: bool = True):
        super().__init__()
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"[{record.levelname:<7}]"
        if self.colour:
            level = f"{_LEVEL_COLOURS.get(record.levelname, '')}{level}{_RESET}"
        line = f"{ts} {level} {record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Replace the root logger's handlers according to ``[logging]`` config.

    Called once by ``run_server.main`` after the CLI overrides are applied.
    Unknown level names fall back to INFO.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_JSONFormatter())
    else:
        console.setFormatter(_HumanFormatter(colour=sys.stderr.isatty()))
    root.addHandler(console)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(path))
        file_handler.setFormatter(_JSONFormatter())
        root.addHandler(file_handler)

    # keep them at INFO or above even when the service runs at DEBUG
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.INFO))
