from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base error of the speech engine adapter."""


class EngineStateError(EngineError):
    """Operation not allowed in the engine's current state."""


class PolicyDeniedError(EngineError):
    """The platform refused access to the audio device."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code
