from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure classes reported by external collaborators."""

    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    SERVER_ERROR = "server_error"
    INVALID_RESPONSE = "invalid_response"


class IndexerError(Exception):
    pass


class ConfigError(IndexerError):
    pass


class CLIOutputError(IndexerError):
    """celocli produced output that could not be parsed."""


class CommandFailedError(IndexerError):
    def __init__(
        self,
        command: str,
        attempts: int,
        last_error: Exception,
        kind: ErrorKind = ErrorKind.TRANSPORT,
    ):
        self.command = command
        self.attempts = attempts
        self.last_error = last_error
        self.kind = kind
        super().__init__(
            f"Command failed after {attempts} attempts. Last error: {last_error}"
        )


class RPCCallError(IndexerError):
    def __init__(
        self, kind: ErrorKind, message: str, status_code: Optional[int] = None
    ):
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)


def snippet(value, limit: int = 200) -> str:
    """Size-bounded string form of a response body or error for log lines."""
    text = str(value)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
