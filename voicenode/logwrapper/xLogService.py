from __future__ import annotations

import logging
import logging.config
import os
import warnings
from typing import Any, Callable, Dict, Iterable, List, Optional

from voicenode.broker.services.commands import Command

from .config_loader import load_config
from .services.handlers import BrokerLogHandler, InMemoryLogHandler, build_formatter

_MEMORY_HANDLER: Optional[InMemoryLogHandler] = None
_REMOTE_HANDLER: Optional[BrokerLogHandler] = None
_REMOTE_LOGGERS: List[str] = ["speech"]
_ROUTER = None  # lazy import for FastAPI

# Level names used by the broker side in addition to the stdlib ones
_LEVEL_ALIASES: Dict[str, int] = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "information": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "fatal": logging.CRITICAL,
}


def _ensure_log_dir(path: str) -> None:
    directory = os.path.dirname(path)
    if directory and not os.path.exists(directory):
        os.makedirs(directory, exist_ok=True)


def parse_level(name: str | int) -> int:
    """Map a level name ("Debug", "Information", "WARNING", ...) to a logging level."""
    if isinstance(name, int):
        return name
    key = str(name).strip().lower()
    if key in _LEVEL_ALIASES:
        return _LEVEL_ALIASES[key]
    raise ValueError(f"unknown log level: {name!r}")


def init_logging(overrides: Optional[Dict[str, Any]] = None) -> None:
    """Configure the root logger once for the whole process.

    - records of every module are collected (disable_existing_loggers=False)
    - optional console and rotating file handlers
    - in-memory ring buffer handler
    - warnings are captured into logging
    """
    global _MEMORY_HANDLER

    if _MEMORY_HANDLER is not None and logging.getLogger().handlers:
        return

    cfg = load_config(overrides=overrides)

    handlers: Dict[str, Dict[str, Any]] = {}
    root_handlers = []

    memory_name = "in_memory"
    handlers[memory_name] = {
        "()": InMemoryLogHandler,
        "maxlen": int(cfg.get("buffer_size", 1000)),
        "level": "DEBUG",
    }
    root_handlers.append(memory_name)

    if cfg.get("enable_console", True):
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "level": str(cfg.get("console_level", "INFO")).upper(),
            "stream": "ext://sys.stdout",
        }
        root_handlers.append("console")

    if cfg.get("enable_file", True):
        path = str(cfg.get("file_path", "logs/voicenode.log"))
        _ensure_log_dir(path)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": "DEBUG",
            "filename": path,
            "maxBytes": int(cfg.get("rotate_bytes", 2 * 1024 * 1024)),
            "backupCount": int(cfg.get("backup_count", 5)),
            "encoding": "utf-8",
        }
        root_handlers.append("file")

    formatter = build_formatter(bool(cfg.get("json_format", False)))

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "()": lambda: formatter,
                }
            },
            "handlers": {
                name: {
                    **opts,
                    "formatter": "default",
                }
                for name, opts in handlers.items()
            },
            "root": {
                "level": "DEBUG",
                "handlers": root_handlers,
            },
        }
    )

    if cfg.get("capture_warnings", True):
        logging.captureWarnings(True)
        warnings.simplefilter("default")

    for h in logging.getLogger().handlers:
        if isinstance(h, InMemoryLogHandler):
            _MEMORY_HANDLER = h
            break

    for name, level in (cfg.get("module_levels") or {}).items():
        try:
            logging.getLogger(name).setLevel(parse_level(level))
        except ValueError:
            logging.getLogger(name).setLevel(level)


def get_memory_handler() -> Optional[InMemoryLogHandler]:
    return _MEMORY_HANDLER


def get_remote_handler() -> Optional[BrokerLogHandler]:
    return _REMOTE_HANDLER


def enable_remote_logging(
    sender: Callable[[Command], None],
    loggers: Optional[Iterable[str]] = None,
    level: str | int = "DEBUG",
) -> BrokerLogHandler:
    """Forward records of ``loggers`` to the broker through ``sender``.

    Calling it again replaces the previous handler.
    """
    global _REMOTE_HANDLER, _REMOTE_LOGGERS
    disable_remote_logging()
    if loggers is not None:
        _REMOTE_LOGGERS = [str(n) for n in loggers]
    handler = BrokerLogHandler(sender, level=parse_level(level))
    for name in _REMOTE_LOGGERS:
        logging.getLogger(name).addHandler(handler)
    _REMOTE_HANDLER = handler
    return handler


def disable_remote_logging() -> None:
    global _REMOTE_HANDLER
    if _REMOTE_HANDLER is None:
        return
    for name in _REMOTE_LOGGERS:
        logging.getLogger(name).removeHandler(_REMOTE_HANDLER)
    _REMOTE_HANDLER = None


def apply_log_level(name: str | int) -> int:
    """Set the verbosity threshold of the remote-logged loggers and the remote handler."""
    level = parse_level(name)
    for logger_name in _REMOTE_LOGGERS:
        logging.getLogger(logger_name).setLevel(level)
    if _REMOTE_HANDLER is not None:
        _REMOTE_HANDLER.setLevel(level)
    logging.getLogger("logwrapper").info("Log level set to %s", logging.getLevelName(level))
    return level


def get_router():  # lazy import to avoid FastAPI dep when unused
    global _ROUTER
    if _ROUTER is not None:
        return _ROUTER
    from .api.router import router

    _ROUTER = router
    return _ROUTER


if __name__ == "__main__":
    init_logging()
    log = logging.getLogger("logwrapper.demo")
    log.info("Logwrapper service started")
    log.warning("This is a warning")
    log.error("This is an error")
