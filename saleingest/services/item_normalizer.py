"""Map raw listing items onto the catalog's canonical sale shape."""

from typing import Any, NamedTuple, Optional
from pydantic import ValidationError
from saleingest.models.listing_item import RawListingItem
from saleingest.models.sale import CanonicalSale, SaleSource

# Title keyword -> tag
KEYWORD_TAGS: dict[str, str] = {
    "multi-family": "multi-family",
    "moving": "moving",
    "estate": "estate",
    "tools": "tools",
    "furniture": "furniture",
    "antique": "antique",
    "kids": "kids",
    "toys": "toys",
    "books": "books",
    "electronics": "electronics",
    "appliances": "appliances",
    "clothing": "clothing",
    "accessories": "accessories",
    "collectibles": "collectibles",
    "art": "art",
    "hardware": "hardware",
    "garage": "garage",
    "yard": "yard",
}

ALWAYS_PRESENT_FIELDS = ("tags", "photos")


class ValidationResult(NamedTuple):
    valid: bool
    errors: list[str]


def extract_tags_from_title(title: str, source: str) -> list[str]:
    """Keyword tags found in the title plus the source tag, without duplicates."""
    title_lower = title.lower()
    tags = [tag for keyword, tag in KEYWORD_TAGS.items() if keyword in title_lower]
    tags.append(source.lower())
    return list(dict.fromkeys(tags))


def prune_empty_fields(record: dict[str, Any]) -> dict[str, Any]:
    """Drop None and empty-string values; tags and photos are always kept."""
    pruned = {}
    for key, value in record.items():
        if key in ALWAYS_PRESENT_FIELDS:
            pruned[key] = list(value or [])
        elif value is None or value == "":
            continue
        else:
            pruned[key] = value
    return pruned


def normalize_listing_item(
    item: RawListingItem,
    context_label: str,
    source: SaleSource = SaleSource.CRAIGSLIST,
) -> dict[str, Any]:
    """
    Canonical sale dict for a parsed item.

    Pure and deterministic. A scalar price becomes both price_min and
    price_max. Fields the source did not supply are omitted entirely.
    """
    source_value = SaleSource(source).value
    price: Optional[float] = item.price

    normalized = {
        "title": item.title,
        "description": f"Found on {source_value.capitalize()} {context_label}".strip(),
        "start_at": item.posted_at,
        "price_min": price,
        "price_max": price,
        "url": item.url,
        "tags": extract_tags_from_title(item.title, source_value),
        "photos": [],
        "source": source_value,
    }
    return prune_empty_fields(normalized)


def validate_normalized_sale(sale: dict[str, Any]) -> ValidationResult:
    """Check a normalized sale against the catalog schema without raising."""
    try:
        CanonicalSale.model_validate(sale)
        return ValidationResult(valid=True, errors=[])
    except ValidationError as e:
        errors = []
        for err in e.errors():
            location = ".".join(str(part) for part in err.get("loc", ()))
            errors.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
        return ValidationResult(valid=False, errors=errors or ["Unknown validation error"])
