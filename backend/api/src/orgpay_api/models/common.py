"""Shared API response models.

Domain models live in orgpay.models; this module holds HTTP-layer concerns
only.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from orgpay.models.errors import ErrorCode, ErrorResponse

__all__ = [
    "ApiModel",
    "ErrorCode",
    "ErrorResponse",
    "ERROR_RESPONSES",
    "HealthResponse",
]


class ApiModel(BaseModel):
    """Base for request/response bodies exchanged in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    status: str = Field(default="ok", examples=["ok"])
    timestamp: str
    service: str = "orgpay-api"


# OpenAPI `responses=` entries for the error statuses a route can return
ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    401: {"model": ErrorResponse, "description": "Authentication required"},
    403: {"model": ErrorResponse, "description": "Not an organization admin"},
    404: {"model": ErrorResponse, "description": "Resource not found"},
    409: {"model": ErrorResponse, "description": "Idempotency conflict or payment in progress"},
    502: {"model": ErrorResponse, "description": "Stripe API error"},
    503: {"model": ErrorResponse, "description": "Stripe unavailable"},
}
