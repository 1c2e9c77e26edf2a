from .client import BrokerClient, BrokerConfig, BrokerCredentials, BrokerError, BrokerNotConnectedError, parse_address
from .commands import Command, CommandType, LogMessage, SetLogLevel, SET_LOG_LEVEL_TOPIC

__all__ = [
    "BrokerClient",
    "BrokerConfig",
    "BrokerCredentials",
    "BrokerError",
    "BrokerNotConnectedError",
    "Command",
    "CommandType",
    "LogMessage",
    "SetLogLevel",
    "SET_LOG_LEVEL_TOPIC",
    "parse_address",
]
