from __future__ import annotations

import logging
import traceback
from collections import deque
from typing import Callable, Deque, Iterable, List, Optional

from voicenode.broker.services.commands import Command, CommandType, LogMessage

# Broker-side level names (topic of remote log commands)
_REMOTE_NAMES = (
    (logging.ERROR, "Error"),
    (logging.WARNING, "Warning"),
    (logging.INFO, "Info"),
    (logging.DEBUG, "Debug"),
)

# Records of these loggers are never forwarded, they would loop back into the broker
_LOCAL_ONLY_PREFIXES = ("broker", "paho")


class InMemoryLogHandler(logging.Handler):
    """Ring buffer handler holding formatted records for the /logs endpoint."""

    def __init__(self, maxlen: int = 1000, level: int = logging.NOTSET) -> None:
        super().__init__(level=level)
        self.buffer: Deque[str] = deque(maxlen=maxlen)

    def emit(self, record: logging.LogRecord) -> None:  # noqa: D401
        try:
            msg = self.format(record)
        except Exception:  # pragma: no cover
            msg = record.getMessage()
        self.buffer.append(msg)

    def tail(self, n: int = 100) -> List[str]:
        if n <= 0:
            return []
        start = max(0, len(self.buffer) - n)
        return list(self.buffer)[start:]

    def iter(self) -> Iterable[str]:
        return iter(self.buffer)


def remote_level_name(levelno: int) -> str:
    for threshold, name in _REMOTE_NAMES:
        if levelno >= threshold:
            return name
    return "Debug"


class BrokerLogHandler(logging.Handler):
    """Publishes log records to the broker as Action commands.

    The command topic is the level name ("Debug", "Info", "Warning", "Error")
    and the single data item is a LogMessage. Delivery is best effort.
    """

    def __init__(self, sender: Callable[[Command], None], level: int = logging.DEBUG) -> None:
        super().__init__(level=level)
        self._sender = sender

    def build_command(self, record: logging.LogRecord) -> Command:
        level = remote_level_name(record.levelno)
        stack: Optional[str] = None
        if record.exc_info and record.exc_info[1] is not None:
            stack = "".join(traceback.format_exception(*record.exc_info))
        message = LogMessage(Level=level, Message=record.getMessage(), StackTrace=stack)
        return Command(Type=CommandType.ACTION, Topic=level, Data=[message])

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(_LOCAL_ONLY_PREFIXES):
            return
        try:
            self._sender(self.build_command(record))
        except Exception:
            self.handleError(record)


def build_formatter(json_format: bool) -> logging.Formatter:
    if json_format:
        # Minimal JSON without extra deps
        fmt = (
            '{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s"'
            ',"msg":"%(message)s","module":"%(module)s","line":%(lineno)d}'
        )
        datefmt = "%Y-%m-%dT%H:%M:%S"
        return logging.Formatter(fmt=fmt, datefmt=datefmt)
    fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    datefmt = "%H:%M:%S"
    return logging.Formatter(fmt=fmt, datefmt=datefmt)
