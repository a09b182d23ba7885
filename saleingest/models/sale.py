"""Canonical sale schema shared by the normalizer, the detector and storage."""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SaleSource(str, Enum):
    """Provenance of a catalog sale."""
    CRAIGSLIST = "craigslist"
    MANUAL = "manual"


class SaleStatus(str, Enum):
    """Catalog status values used by this service."""
    ACTIVE = "active"
    PUBLISHED = "published"


def parse_iso_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 date or datetime (trailing Z allowed)."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed


class CanonicalSale(BaseModel):
    """Catalog representation of a sale, independent of where it came from."""
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=100, description="Sale title")
    description: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    start_at: Optional[str] = Field(None, description="ISO start timestamp")
    end_at: Optional[str] = Field(None, description="ISO end timestamp")
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    price_min: Optional[float] = Field(None, ge=0)
    price_max: Optional[float] = Field(None, ge=0)
    url: Optional[str] = None
    tags: list[str] = Field(..., description="Lowercase, de-duplicated tags")
    photos: list[str] = Field(..., description="Ordered photo URLs")
    source: SaleSource = Field(..., description="Provenance")

    @field_validator("start_at", "end_at")
    @classmethod
    def _check_timestamp(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_iso_timestamp(value)
        return value

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: list[str]) -> list[str]:
        if any(tag != tag.lower() for tag in value):
            raise ValueError("tags must be lowercase")
        if len(set(value)) != len(value):
            raise ValueError("tags must be unique")
        return value

    @model_validator(mode="after")
    def _check_ranges(self) -> "CanonicalSale":
        if self.price_min is not None and self.price_max is not None:
            if self.price_min > self.price_max:
                raise ValueError("price_min must be less than or equal to price_max")
        if self.start_at and self.end_at:
            if parse_iso_timestamp(self.end_at) < parse_iso_timestamp(self.start_at):
                raise ValueError("end_at must be on or after start_at")
        return self
