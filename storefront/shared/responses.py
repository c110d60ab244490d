"""
Uniform response envelope returned by every public saga operation.

Callers never see an unhandled exception: failures are reported with a
machine-readable code, an HTTP-style status code and a human message.
"""
from datetime import datetime, timezone
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceResponse(BaseModel, Generic[T]):
    """
    Result of a service operation.

    Attributes:
        success (bool): Whether the operation took effect
        status_code (int): HTTP-style status code (200, 201, 400, 404, 500...)
        code (str): Machine-readable outcome, e.g. "ORDER_NOT_FOUND"
        message (str): Human-readable description
        data: Optional payload
        timestamp (datetime): When the response was produced
    """
    success: bool
    status_code: int
    code: str
    message: str
    data: Optional[T] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @classmethod
    def ok(cls, code: str, message: str, data: Optional[T] = None, status_code: int = 200) -> "ServiceResponse[T]":
        return cls(success=True, status_code=status_code, code=code, message=message, data=data)

    @classmethod
    def fail(cls, code: str, message: str, status_code: int = 400, data: Optional[T] = None) -> "ServiceResponse[T]":
        return cls(success=False, status_code=status_code, code=code, message=message, data=data)
