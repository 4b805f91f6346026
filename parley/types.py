from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


@dataclass
class ToolResult:
    """Outcome of a single ``Tool.execute`` call."""

    success: bool
    content: str
    data: dict | list | None = None
    error: str | None = None
    error_code: str | None = None
    metadata: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        payload: dict = {"success": self.success, "content": self.content}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        if self.error_code is not None:
            payload["error_code"] = self.error_code
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class ErrorCode:
    VALIDATION_ERROR = "validation_error"
    TIMEOUT = "timeout"
    TOOL_EXCEPTION = "tool_exception"
    UNKNOWN_TOOL = "unknown_tool"
    NO_RESULT = "no_result"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    """Classification of a failed conversation step."""

    VALIDATION = "validation_error"
    PROVIDER = "provider_error"
    TOOL = "tool_error"
    CONTEXT_EXCEEDED = "context_exceeded_error"
    MAX_TURNS_EXCEEDED = "max_turns_exceeded"
    CANCELLED = "cancelled"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Origin(str, Enum):
    VALIDATION = "validation"
    PROVIDER = "provider"
    TOOL = "tool"
    RETURN = "return"
    SESSION = "session"


class CallStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    STREAMING = "streaming"
    FINISHED = "finished"


@dataclass(frozen=True)
class RuntimeMessage:
    severity: Severity
    origin: Origin
    text: str


class ParleyError(Exception):
    """Base class for programming errors raised by parley."""


class ToolNotFoundError(ParleyError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolExecutionError(ParleyError):
    pass


class ConfigError(ParleyError):
    pass
