"""Raw listing item models produced by the markup and feed parsers."""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class RawListingItem(BaseModel):
    """Minimally structured listing row extracted from source markup."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Parser-assigned id, unique within one parse call only")
    title: str = Field(default="", description="Listing title, empty when it could not be extracted")
    url: Optional[str] = Field(None, description="Listing link as found in the markup")
    posted_at: Optional[str] = Field(None, description="ISO timestamp, defaults to parse time")
    price: Optional[float] = Field(None, ge=0, description="Lowest dollar amount, None for FREE or missing")
    city: Optional[str] = Field(None, description="Reserved, not populated by the parsers")
