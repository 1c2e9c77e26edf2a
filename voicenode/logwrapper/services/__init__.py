from .handlers import BrokerLogHandler, InMemoryLogHandler, build_formatter

__all__ = ["BrokerLogHandler", "InMemoryLogHandler", "build_formatter"]
