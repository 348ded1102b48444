"""
Base schemas shared by request and response models.
"""

from pydantic import BaseModel, ConfigDict


class StandardizedModel(BaseModel):
    """Base model for responses built from ORM rows."""

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True, from_attributes=True)


class StrictModel(BaseModel):
    """Request body base: unknown fields are rejected."""

    model_config = ConfigDict(
        extra="forbid",
        validate_default=True,
        validate_assignment=True,
    )
