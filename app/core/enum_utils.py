"""
Enum Utilities for VARCHAR-based Status Fields

Every status, type and model tag in the commission ledger is stored as an
UPPERCASE VARCHAR(50), never as a database ENUM:

• SQLAlchemy: String(50) with Mapped[str]
• Services: compare against the Python Enum's .value
• Pydantic: accept case-insensitive input, normalise to UPPERCASE

USAGE PATTERNS:
━━━━━━━━━━━━━━━
1. In SQLAlchemy Models:
   status: Mapped[str] = mapped_column(String(50), default="PENDING")

2. In Pydantic Schemas (with case normalization):
   normalize_model = create_uppercase_validator('model', VALID_ATTRIBUTION_MODELS)

3. Writing a value that may be an Enum or a str:
   event.status = get_enum_value(CommissionEventStatus.APPROVED)
"""

from enum import Enum
from typing import Any, Set


def get_enum_value(value: Any) -> str:
    """
    Safely get string value from an enum or string.

    Examples:
        >>> get_enum_value(CommissionEventStatus.PENDING)
        'PENDING'
        >>> get_enum_value("PENDING")
        'PENDING'
        >>> get_enum_value(None)
        None
    """
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)


def normalize_to_uppercase(value: Any, valid_values: Set[str]) -> Any:
    """
    Normalize a string value to UPPERCASE if it's a valid enum value.

    Invalid values are returned untouched so Pydantic raises its own
    validation error for them.
    """
    if value is None:
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, str):
        upper_v = value.strip().upper()
        if upper_v in valid_values:
            return upper_v
    return value


def create_uppercase_validator(field_name: str, valid_values: Set[str]) -> classmethod:
    """
    Create a Pydantic field_validator that normalizes values to UPPERCASE.

    Usage:
        class MySchema(BaseModel):
            model: AttributionModel

            normalize_model = create_uppercase_validator('model', VALID_ATTRIBUTION_MODELS)
    """
    from pydantic import field_validator

    @field_validator(field_name, mode='before')
    @classmethod
    def validate(cls, v):
        return normalize_to_uppercase(v, valid_values)

    return validate


# =============================================================================
# VALID VALUE SETS
# =============================================================================

VALID_ATTRIBUTION_MODELS = {
    "FIRST_CLICK", "LAST_CLICK", "LINEAR", "TIME_DECAY", "POSITION"
}

VALID_TOUCH_TYPES = {"CLICK", "IMPRESSION", "POSTBACK"}

VALID_SUPPRESSION_MODES = {"WITHHOLD", "ROUND"}
