from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class CommandType(str, Enum):
    ACTION = "Action"
    REQUEST = "Request"
    RESPONSE = "Response"


class LogMessage(BaseModel):
    Level: str = Field(..., description="Level name as used on the broker side (Debug, Info, Warning, Error)")
    Message: str = Field(default="", description="Formatted log message")
    StackTrace: Optional[str] = Field(default=None, description="Formatted traceback when an exception was logged")


class Command(BaseModel):
    Type: CommandType = Field(default=CommandType.ACTION)
    Topic: str = Field(..., min_length=1, description="Topic the broker routes the command by")
    Data: List[LogMessage] = Field(default_factory=list, description="Optional structured payload")

    def to_payload(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode("utf-8")


class SetLogLevel(BaseModel):
    Level: str


SET_LOG_LEVEL_TOPIC = "SetLogLevel"
