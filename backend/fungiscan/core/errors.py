"""
Error taxonomy for the sync layer.

Remote failures are split by how the repository reacts to them:
``NetworkError`` means "retry later", ``Unauthorized`` and ``ServerError``
are surfaced to the user and never retried in a tight loop.
"""
from typing import Any, Dict, Optional


class FungiScanError(Exception):
    """Base class for every error raised by the sync layer."""

    code = "FS_000"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"[{self.code}] {self.message} | {self.details}"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(FungiScanError):
    """Caller passed malformed input (empty name, bad coordinates, ...)."""

    code = "FS_422"


class StorageError(FungiScanError):
    """Local persistence failed. Always fatal for the operation."""

    code = "FS_500"


# ── Remote errors ───────────────────────────────────────────────────────────

class RemoteError(FungiScanError):
    """Any failure talking to the backend."""

    code = "REMOTE_000"
    retryable = False


class NotFound(RemoteError):
    code = "REMOTE_404"


class Unauthorized(RemoteError):
    code = "REMOTE_401"


class ServerError(RemoteError):
    code = "REMOTE_5XX"

    def __init__(self, status: int, message: str):
        super().__init__(message, details={"status": status})
        self.status = status


class NetworkError(RemoteError):
    """Timeout, DNS failure, refused connection: the backend was never reached."""

    code = "REMOTE_NET"
    retryable = True
