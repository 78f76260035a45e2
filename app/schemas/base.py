"""
Base Schema Classes for Pydantic Models

RULE: Response schemas that read from ORM models inherit from BaseResponseSchema;
request payloads inherit from BaseCreateSchema.
"""

from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for response schemas that read from ORM models.

    Usage:
        class CommissionEventResponse(BaseResponseSchema):
            id: UUID
            status: str
    """
    model_config = ConfigDict(
        from_attributes=True,
        # Serialize UUIDs as strings in JSON output
        json_encoders={
            UUID: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for inbound payloads (webhook notifications, internal calls).

    Unknown fields are ignored so upstream senders can add fields freely.
    """
    model_config = ConfigDict(
        extra='ignore',
    )
