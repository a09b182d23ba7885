"""Duplicate detection models."""

from typing import Any, Optional
from pydantic import BaseModel, Field, model_validator


class DuplicateCandidate(BaseModel):
    """Existing catalog sale that plausibly describes the same physical sale."""
    sale: dict[str, Any] = Field(..., description="Catalog row including its id")
    distance_meters: float = Field(..., ge=0)
    similarity: float = Field(..., ge=0.0, le=1.0)
    reason: str = Field(..., description="Human readable summary of distance and similarity")


class NegativeMatch(BaseModel):
    """Confirmed fact that two sales are distinct; one row per unordered pair."""
    sale_id_a: str = Field(..., min_length=1)
    sale_id_b: str = Field(..., min_length=1)
    created_by: Optional[str] = None

    @model_validator(mode="after")
    def _check_order(self) -> "NegativeMatch":
        if not self.sale_id_a < self.sale_id_b:
            raise ValueError("sale_id_a must sort strictly before sale_id_b")
        return self

    @classmethod
    def for_pair(cls, id_a: str, id_b: str, created_by: Optional[str] = None) -> "NegativeMatch":
        """Build the canonical row for an unordered pair."""
        first, second = sorted((id_a, id_b))
        return cls(sale_id_a=first, sale_id_b=second, created_by=created_by)
