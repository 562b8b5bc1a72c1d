"""Shared result schemas."""
from typing import Literal

from pydantic import BaseModel, Field


class InsufficientData(BaseModel):
    """Returned by an analyzer instead of a result when its input is too small to be meaningful."""

    kind: Literal["insufficient_data"] = "insufficient_data"
    reason: str
    sample_size: int = Field(..., ge=0, description="Data points available")
    required: int = Field(..., ge=0, description="Data points needed")
