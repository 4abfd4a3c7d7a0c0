"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, Field


class StkPushRequest(BaseModel):
    """Request schema for starting an STK push."""

    phone_number: str = Field(
        ...,
        validation_alias=AliasChoices("phone_number", "phoneNumber"),
        description="Payer phone number (0XXXXXXXXX, 254XXXXXXXXX, +254XXXXXXXXX)",
    )
    amount: float = Field(..., description="Amount in KES; must be a positive whole number")
    course_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("course_id", "courseId"),
        description="Course being purchased",
    )
    user_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("user_id", "userId"),
        description="Purchasing user",
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "phone_number": "0712345678",
                    "amount": 1000,
                    "course_id": "course-python-101",
                    "user_id": "user-42",
                }
            ]
        }
    }


class StkPushResponse(BaseModel):
    """Response schema for STK push initiation."""

    success: bool = Field(..., description="Whether the gateway accepted the request")
    message: str = Field(..., description="Gateway or error description")
    checkout_request_id: Optional[str] = Field(
        default=None, description="Correlation id to poll for the outcome"
    )
    error: Optional[str] = Field(
        default=None,
        description="configuration, invalid_input, auth, rejected or gateway",
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "success": True,
                    "message": "Success. Request accepted for processing",
                    "checkout_request_id": "ws_CO_191220191020363925",
                    "error": None,
                }
            ]
        }
    }


class PaymentStatusResponse(BaseModel):
    """Response schema for payment request status."""

    checkout_request_id: str = Field(..., description="Gateway correlation id")
    user_id: str = Field(..., description="User identifier")
    course_id: str = Field(..., description="Course identifier")
    amount: int = Field(..., description="Requested amount in KES")
    status: str = Field(..., description="pending, succeeded or failed")
    result_code: Optional[int] = Field(default=None, description="Gateway result code")
    result_description: Optional[str] = Field(default=None, description="Gateway result text")
    receipt_number: Optional[str] = Field(default=None, description="M-Pesa receipt number")
    created_at: Optional[str] = Field(default=None, description="Creation timestamp (ISO 8601)")
    completed_at: Optional[str] = Field(
        default=None, description="Settlement timestamp (ISO 8601)"
    )


class CallbackAck(BaseModel):
    """Acknowledgement returned to the gateway."""

    ResultCode: int = Field(..., description="0 accepted, 1 redeliver")
    ResultDesc: str = Field(..., description="Human readable acknowledgement")


class ReconciliationResponse(BaseModel):
    """Response schema for reconciliation."""

    checked: int = Field(..., description="Pending requests queried")
    succeeded: int = Field(..., description="Requests settled as paid")
    failed: int = Field(..., description="Requests settled as failed")
    still_pending: int = Field(..., description="Requests the gateway is still processing")
    errors: int = Field(..., description="Requests that could not be queried")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")
