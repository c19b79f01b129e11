"""
Pydantic schemas for the /identify endpoint
Handles request validation and response serialization
"null" strings and blank values are treated as absent
"""

import re
from typing import Any, Dict, List, Optional

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, Field, field_validator, model_validator

_NULL_MARKERS = ("null", "")


def _is_null_marker(value) -> bool:
    return isinstance(value, str) and value.lower().strip() in _NULL_MARKERS


class IdentifyRequest(BaseModel):
    """
    Request schema for the /identify endpoint
    Validates that at least one of email or phoneNumber is provided
    """
    email: Optional[str] = Field(
        None,
        description="Customer email address",
        examples=["customer@example.com", None]
    )
    phoneNumber: Optional[str] = Field(
        None,
        max_length=20,
        description="Customer phone number",
        examples=["+1234567890", "123-456-7890", None]
    )

    @field_validator('email', mode='before')
    @classmethod
    def clean_email(cls, v) -> Optional[str]:
        """
        Clean email input
        Converts "null" strings to None and checks the address syntax;
        the address itself is kept exactly as submitted
        """
        if v is None or _is_null_marker(v):
            return None

        if not isinstance(v, str):
            raise ValueError('Email must be a string')

        v = v.strip()
        if len(v) > 255:
            raise ValueError('Email must be at most 255 characters')
        try:
            validate_email(v, check_deliverability=False)
        except EmailNotValidError as e:
            raise ValueError(f'Invalid email format: {e}')
        return v

    @field_validator('phoneNumber', mode='before')
    @classmethod
    def clean_phone_number(cls, v) -> Optional[str]:
        """
        Clean phone number input
        Numbers are accepted and stored as their string form
        """
        if v is None or _is_null_marker(v):
            return None

        if isinstance(v, bool):
            raise ValueError('Phone number must be a string or number')
        if isinstance(v, (int, float)):
            v = str(int(v))

        if not isinstance(v, str):
            raise ValueError('Phone number must be a string or number')

        v = v.strip()
        digits_only = re.sub(r'[^\d]', '', v)
        if len(digits_only) < 3:
            raise ValueError('Phone number must contain at least 3 digits')

        # Stored exactly as provided; matching is exact equality
        return v

    @model_validator(mode='after')
    def validate_at_least_one_field(self):
        """
        Ensure at least one of email or phoneNumber is provided
        """
        if not self.email and not self.phoneNumber:
            raise ValueError('Either email or phoneNumber must be provided')
        return self

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "examples": [
                {
                    "email": "customer@example.com",
                    "phoneNumber": "+1234567890"
                },
                {
                    "email": None,
                    "phoneNumber": "123456"
                },
                {
                    "email": "null",
                    "phoneNumber": 123456
                }
            ]
        }


class IdentitySummary(BaseModel):
    """
    Consolidated view of one identity cluster
    The primary contact's email and phone come first in their lists
    """
    primaryContactId: int = Field(
        description="ID of the primary contact"
    )
    emails: List[str] = Field(
        default_factory=list,
        description="All email addresses associated with this identity",
        examples=[["customer@example.com", "customer2@example.com"]]
    )
    phoneNumbers: List[str] = Field(
        default_factory=list,
        description="All phone numbers associated with this identity",
        examples=[["+1234567890", "123-456-7890"]]
    )
    secondaryContactIds: List[int] = Field(
        default_factory=list,
        description="IDs of all secondary contacts linked to the primary",
        examples=[[2, 3, 4]]
    )


class IdentifyResponse(BaseModel):
    """
    Response schema for the /identify endpoint
    """
    contact: IdentitySummary = Field(
        description="Consolidated contact information"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "contact": {
                    "primaryContactId": 1,
                    "emails": ["customer@example.com", "customer2@example.com"],
                    "phoneNumbers": ["+1234567890", "123-456-7890"],
                    "secondaryContactIds": [2, 3]
                }
            }
        }


class ErrorResponse(BaseModel):
    """
    Error response schema for API errors
    """
    error: str = Field(
        description="Error type or category"
    )
    message: str = Field(
        description="Human-readable error message"
    )
    details: Optional[Dict[str, Any]] = Field(
        None,
        description="Additional error details"
    )

    class Config:
        json_schema_extra = {
            "examples": [
                {
                    "error": "ValidationError",
                    "message": "Either email or phoneNumber must be provided",
                    "details": {"errors": [{"field": "body", "message": "..."}]}
                },
                {
                    "error": "ConflictError",
                    "message": "Concurrent update detected, retry the request",
                    "details": {"retryable": True}
                }
            ]
        }
