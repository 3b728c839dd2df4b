"""
Enum helpers for VARCHAR status columns.

Statuses are stored as UPPERCASE strings in String(50) columns and exposed
as Python enums in request schemas. The console may send "excluded" as well
as "EXCLUDED", so request schemas normalise case before enum validation.
"""
from enum import Enum
from typing import Any, Set, Type


def enum_values(enum_class: Type[Enum]) -> list:
    """Get all values from an enum class."""
    return [e.value for e in enum_class]


def normalize_to_uppercase(value: Any, valid_values: Set[str]) -> Any:
    """
    Normalize a string value to UPPERCASE if it's a valid enum value.

    Anything else is returned as-is for pydantic to reject.
    """
    if isinstance(value, str):
        upper_v = value.strip().upper()
        if upper_v in valid_values:
            return upper_v
    return value


def create_uppercase_validator(field_name: str, valid_values: Set[str]) -> classmethod:
    """
    Create a pydantic field_validator that normalizes values to UPPERCASE.

    Usage:
        class AffiliateStatusUpdate(BaseModel):
            status: IndividualClearanceStatus

            _normalize_status = create_uppercase_validator('status', VALID_INDIVIDUAL_STATUSES)
    """
    from pydantic import field_validator

    @field_validator(field_name, mode='before')
    @classmethod
    def validate(cls, v):
        return normalize_to_uppercase(v, valid_values)

    return validate
