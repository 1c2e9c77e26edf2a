"""Speech module package.

Keeps a continuous recognition session alive and forwards recognised
commands to the broker. Can be used as library or run as a service.
"""

from . import xSpeechService as xSpeechService  # re-export module for convenience

__all__ = [
    "config_loader",
    "xSpeechService",
]
