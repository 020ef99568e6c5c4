"""
Bridge error types — every failure crossing a context boundary carries a code.
"""

from typing import Any, Optional


class BridgeError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class ValidationError(BridgeError):
    """Malformed caller input. Never retried."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("validation_error", message, details)


class DuplicateError(BridgeError):
    """Same logical action seen again inside the dedup window. Never retried."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__("duplicate", message, {"key": key} if key else None)
        self.key = key


class TimeoutError(BridgeError):
    def __init__(self, message: str, message_type: Optional[str] = None):
        super().__init__("timeout", message, {"message_type": message_type} if message_type else None)
        self.message_type = message_type


class ConnectionLostError(BridgeError):
    def __init__(self, message: str = "Background connection lost"):
        super().__init__("connection_lost", message)


class QueueFullError(BridgeError):
    def __init__(self, message: str, limit: Optional[int] = None):
        super().__init__("queue_full", message, {"limit": limit} if limit is not None else None)
        self.limit = limit


class MaxRetriesExceededError(BridgeError):
    def __init__(self, message: str, attempts: int, last_error: Optional[str] = None):
        super().__init__("max_retries_exceeded", message, {"attempts": attempts, "last_error": last_error})
        self.attempts = attempts


class NotFoundError(BridgeError):
    def __init__(self, message: str):
        super().__init__("not_found", message)


class RemoteError(BridgeError):
    """The remote context answered with an error body."""

    def __init__(self, message: str, code: str = "remote_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class ApiError(BridgeError):
    def __init__(self, message: str, status: int, code: str = "api_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)
        self.status = status


_BY_CODE: dict[str, type[BridgeError]] = {
    "validation_error": ValidationError,
    "duplicate": DuplicateError,
    "queue_full": QueueFullError,
    "connection_lost": ConnectionLostError,
    "not_found": NotFoundError,
}


def error_body(exc: BaseException) -> dict[str, Any]:
    """Response body describing a failure, suitable for the wire."""
    if isinstance(exc, BridgeError):
        body: dict[str, Any] = {"success": False, "error": exc.message, "code": exc.code}
        if exc.details:
            body["details"] = exc.details
        return body
    return {"success": False, "error": str(exc) or exc.__class__.__name__, "code": "internal_error"}


def error_from_response(body: dict[str, Any]) -> BridgeError:
    """Rebuild a typed error from a response body carrying `error` (and maybe `code`)."""
    message = str(body.get("error") or "Unknown error")
    code = body.get("code")
    details = body.get("details") if isinstance(body.get("details"), dict) else None
    if code == "timeout":
        return TimeoutError(message, (details or {}).get("message_type"))
    cls = _BY_CODE.get(code) if isinstance(code, str) else None
    if cls is ValidationError:
        return ValidationError(message, details)
    if cls is DuplicateError:
        return DuplicateError(message, (details or {}).get("key"))
    if cls is QueueFullError:
        return QueueFullError(message, (details or {}).get("limit"))
    if cls is not None:
        return cls(message)
    return RemoteError(message, code if isinstance(code, str) and code else "remote_error", details)
