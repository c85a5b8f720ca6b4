"""
Response envelopes shared by every route.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from gmtea.utils.formatters import utc_now


class APIResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class SuccessResponse(APIResponse):
    """Envelope for a successful read or admin operation."""
    data: Optional[Any] = None


class ErrorResponse(APIResponse):
    """Body returned for coded errors. Internal errors never carry details."""
    success: bool = False
    error_code: str
    details: Dict[str, Any] = Field(default_factory=dict)


class HealthCheckResponse(BaseModel):
    status: str = "healthy"
    timestamp: datetime = Field(default_factory=utc_now)
    services: Dict[str, str] = Field(default_factory=dict)
