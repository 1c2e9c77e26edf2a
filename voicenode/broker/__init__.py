"""Broker module package.

MQTT adapter that carries outbound commands and the SetLogLevel subscription.
"""

from .services import BrokerClient, BrokerCredentials, Command, CommandType, LogMessage

__all__ = ["BrokerClient", "BrokerCredentials", "Command", "CommandType", "LogMessage"]
