"""
Pydantic schemas for Identity Reconciliation API
Contains request/response models and data validation schemas
for API endpoints and data transfer objects.
"""

from .identify import (
    ErrorResponse,
    IdentifyRequest,
    IdentifyResponse,
    IdentitySummary,
)

__all__ = [
    "IdentifyRequest",
    "IdentitySummary",
    "IdentifyResponse",
    "ErrorResponse"
]
