from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standard error payload returned by worker endpoints:
    {
        "error": "bad_request",
        "message": "Message content must not be empty",
        "code": 400,
        "details": {...}
    }
    """

    error: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    code: int = Field(..., description="HTTP status code for this error")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


def http_error(
    status_code: int,
    *,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    Helper to create an HTTPException with a standardised error body.
    """
    payload = ErrorResponse(
        error=error,
        message=message,
        code=status_code,
        details=details,
    )
    return HTTPException(status_code=status_code, detail=payload.model_dump())


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_400_BAD_REQUEST, error="bad_request", message=message, details=details
    )


def not_found(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_404_NOT_FOUND, error="not_found", message=message, details=details
    )


def payload_too_large(
    message: str, *, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    return http_error(
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        error="payload_too_large",
        message=message,
        details=details,
    )


def bad_gateway(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_502_BAD_GATEWAY, error="upstream_error", message=message, details=details
    )


class ClientError(ValueError):
    """Invalid caller input: empty chat, unsupported file type. Never retried."""


class UpstreamError(Exception):
    """
    The upstream API answered with a non-2xx status, failed at the
    transport level, or broke off mid-stream.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        text: str = "",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.text = text


class UpstreamTimeoutError(UpstreamError):
    """The per-request ceiling elapsed before the upstream stream finished."""


class InfrastructureError(RuntimeError):
    """Local resource failure: port binding, upload directory creation, disk writes."""


class LockTimeoutError(InfrastructureError):
    def __init__(self, name: str, timeout: float) -> None:
        self.name = name
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s acquiring lock '{name}'")


__all__ = [
    "ErrorResponse",
    "http_error",
    "bad_request",
    "not_found",
    "payload_too_large",
    "bad_gateway",
    "ClientError",
    "UpstreamError",
    "UpstreamTimeoutError",
    "InfrastructureError",
    "LockTimeoutError",
]
