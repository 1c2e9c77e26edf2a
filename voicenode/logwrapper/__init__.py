"""Central logging for the voice node.

Public API:
- init_logging(overrides: dict | None) -> None
- get_memory_handler() -> InMemoryLogHandler | None
- enable_remote_logging(sender, loggers=None, level="DEBUG") -> BrokerLogHandler
- apply_log_level(name) -> int
- get_router() -> fastapi.APIRouter
"""
from .xLogService import (
    apply_log_level,
    disable_remote_logging,
    enable_remote_logging,
    get_memory_handler,
    get_remote_handler,
    get_router,
    init_logging,
    parse_level,
)

__all__ = [
    "apply_log_level",
    "disable_remote_logging",
    "enable_remote_logging",
    "get_memory_handler",
    "get_remote_handler",
    "get_router",
    "init_logging",
    "parse_level",
]
