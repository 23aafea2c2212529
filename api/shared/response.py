"""Envelope shared by every JSON response of the API."""
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ResponseModel(BaseModel, Generic[T]):
    data: Optional[T] = Field(description="Response data", default=None)
    message: Optional[str] = Field(description="Response message", examples=["Success"])
    status: str = Field(default="ok", description="Response status: ok or error")
    error_code: Optional[str] = Field(
        default=None, description="Stable error code when status is error"
    )

    @classmethod
    def success(
        cls, data: Optional[T] = None, message: str = "Success"
    ) -> "ResponseModel[T]":
        return cls(data=data, message=message, status="ok")

    @classmethod
    def error(
        cls, message: str, data: Optional[T] = None, error_code: Optional[str] = None
    ) -> "ResponseModel[T]":
        """Error outcome that still carries data, such as a failed turn to retry."""
        return cls(data=data, message=message, status="error", error_code=error_code)
