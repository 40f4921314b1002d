from __future__ import annotations

from typing import Any


class RouterError(Exception):
    """Base class for every error the endpoint router surfaces to callers."""

    error_type = "router_error"
    default_status_code = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        self.message = message
        self.status_code = (
            status_code if status_code is not None else self.default_status_code
        )
        self.details = details
        self.provider = provider
        self.model = model
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "type": self.error_type,
            "message": self.message,
            "code": self.status_code,
        }
        if self.details is not None:
            error["details"] = self.details
        if self.provider:
            error["provider"] = self.provider
        if self.model:
            error["model"] = self.model
        return {"error": error}


class ValidationError(RouterError):
    error_type = "validation_error"
    default_status_code = 400

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        self.problems = list(problems or [])
        super().__init__(message, details=self.problems or None)


class EndpointNotFoundError(RouterError):
    error_type = "endpoint_not_found"
    default_status_code = 404

    def __init__(self, endpoint_id: str, available: list[str] | None = None) -> None:
        self.endpoint_id = endpoint_id
        self.available = sorted(available or [])
        super().__init__(
            f"Endpoint not found: {endpoint_id}",
            details={"available_endpoints": self.available},
        )


class UpstreamRequestError(RouterError):
    """Non-2xx upstream response, or a transport failure (status 502)."""

    error_type = "upstream_request_failed"
    default_status_code = 502

    @property
    def retryable(self) -> bool:
        if self.status_code == 429:
            return True
        return not 400 <= self.status_code < 500


class StreamUnreadableError(RouterError):
    error_type = "stream_unreadable"
    default_status_code = 502


class RequestTimeoutError(RouterError):
    error_type = "timeout"
    default_status_code = 504


class RequestCancelledError(RouterError):
    error_type = "cancelled"
    default_status_code = 499


__all__ = [
    "EndpointNotFoundError",
    "RequestCancelledError",
    "RequestTimeoutError",
    "RouterError",
    "StreamUnreadableError",
    "UpstreamRequestError",
    "ValidationError",
]
