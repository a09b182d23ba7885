"""
Duplicate sale detection.

Ranks published catalog sales that plausibly describe the same physical sale
as a new one: a bounding box prefilter in storage, then exact haversine
distance, date overlap and title similarity in process. Negative matches are
recorded here but the ranker itself does not consult them; callers layer
``filter_negative_matches`` on top before showing suggestions.
"""

from typing import Any, Iterable, Optional
from saleingest.models.dedupe import DuplicateCandidate, NegativeMatch
from saleingest.models.sale import SaleStatus
from saleingest.services import supabase_client
from saleingest.utils.geo import bounding_box, haversine_distance
from saleingest.utils.logging import get_structured_logger, timed
from saleingest.utils.text_similarity import date_ranges_overlap, string_similarity

logger = get_structured_logger(__name__)

MAX_DISTANCE_METERS = 150
MIN_SIMILARITY = 0.35
MAX_CANDIDATES = 3
SIMILARITY_WEIGHT = 0.7
DISTANCE_WEIGHT = 0.3
BOX_QUERY_LIMIT = 50


def sale_date_range(sale: dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """Start and end of a sale, accepting catalog (start_at) or form (date_start) names."""
    start = sale.get("start_at") or sale.get("date_start")
    end = sale.get("end_at") or sale.get("date_end")
    return start, end


def ranking_score(similarity: float, distance_meters: float) -> float:
    return similarity * SIMILARITY_WEIGHT + (1 - distance_meters / MAX_DISTANCE_METERS) * DISTANCE_WEIGHT


def format_reason(distance_meters: float, similarity: float) -> str:
    return f"Distance: {round(distance_meters)}m, Similarity: {similarity * 100:.1f}%"


def _score_existing(
    existing: dict[str, Any],
    lat: float,
    lng: float,
    title: str,
    start: str,
    end: Optional[str],
) -> Optional[tuple[float, DuplicateCandidate]]:
    if existing.get("lat") is None or existing.get("lng") is None:
        return None

    distance = haversine_distance(lat, lng, float(existing["lat"]), float(existing["lng"]))
    if distance > MAX_DISTANCE_METERS:
        return None

    existing_start, existing_end = sale_date_range(existing)
    if not existing_start:
        return None
    try:
        if not date_ranges_overlap(start, end, existing_start, existing_end):
            return None
    except ValueError:
        logger.debug("Skipping sale with unreadable dates", sale_id=existing.get("id"))
        return None

    similarity = string_similarity(title, existing.get("title") or "")
    if similarity < MIN_SIMILARITY:
        return None

    candidate = DuplicateCandidate(
        sale=existing,
        distance_meters=distance,
        similarity=similarity,
        reason=format_reason(distance, similarity),
    )
    return ranking_score(similarity, distance), candidate


@timed("find_duplicate_candidates")
async def find_duplicate_candidates(new_sale: dict[str, Any]) -> list[DuplicateCandidate]:
    """
    Up to three existing published sales that look like the same sale.

    Args:
        new_sale: Sale dict with lat, lng, title and a start date
            (start_at or date_start); end date and id are optional.

    Returns:
        Candidates ordered by combined score, best first. Empty when the sale
        lacks coordinates, title or start date, or nothing nearby matches.

    Raises:
        SupabaseError: If the bounding box query fails
    """
    lat = new_sale.get("lat")
    lng = new_sale.get("lng")
    title = new_sale.get("title")
    start, end = sale_date_range(new_sale)

    if lat is None or lng is None or not title or not start:
        return []

    lat = float(lat)
    lng = float(lng)
    box = bounding_box(lat, lng, MAX_DISTANCE_METERS)

    nearby = await supabase_client.query_sales_in_bounding_box(
        box,
        status=SaleStatus.PUBLISHED.value,
        exclude_id=new_sale.get("id"),
        limit=BOX_QUERY_LIMIT,
    )

    scored: list[tuple[float, DuplicateCandidate]] = []
    for existing in nearby:
        if new_sale.get("id") and existing.get("id") == new_sale.get("id"):
            continue
        result = _score_existing(existing, lat, lng, title, start, end)
        if result is not None:
            scored.append(result)

    # sorted() is stable, so equal scores keep storage order
    scored = sorted(scored, key=lambda pair: pair[0], reverse=True)
    candidates = [candidate for _, candidate in scored[:MAX_CANDIDATES]]

    logger.info(
        "Duplicate candidates ranked",
        box_hits=len(nearby),
        matches=len(scored),
        returned=len(candidates),
    )
    return candidates


async def record_negative_match(
    sale_id_a: str,
    sale_id_b: str,
    user_id: Optional[str] = None,
) -> bool:
    """
    Record that two sales are distinct.

    The pair is stored in canonical (sorted) order, so (A, B) and (B, A) write
    the same row. Re-recording an existing pair succeeds.

    Returns:
        False for an invalid pair (missing ids or a sale paired with itself)
    """
    if not sale_id_a or not sale_id_b or sale_id_a == sale_id_b:
        return False

    match = NegativeMatch.for_pair(sale_id_a, sale_id_b, created_by=user_id)
    row = match.model_dump(exclude_none=True)
    stored = await supabase_client.insert_negative_match(row)

    logger.info(
        "Negative match recorded",
        sale_id_a=match.sale_id_a,
        sale_id_b=match.sale_id_b,
        stored=stored,
    )
    return stored


async def has_negative_match(sale_id_a: str, sale_id_b: str) -> bool:
    """True when the unordered pair has been confirmed as distinct."""
    if not sale_id_a or not sale_id_b or sale_id_a == sale_id_b:
        return False

    first, second = sorted((sale_id_a, sale_id_b))
    return await supabase_client.negative_match_exists(first, second)


async def filter_negative_matches(
    sale_id: Optional[str],
    candidates: Iterable[DuplicateCandidate],
) -> list[DuplicateCandidate]:
    """Drop candidates a user already confirmed as distinct from sale_id."""
    candidates = list(candidates)
    if not sale_id or not candidates:
        return candidates

    partners = await supabase_client.get_negative_match_partners(sale_id)
    if not partners:
        return candidates

    kept = [c for c in candidates if c.sale.get("id") not in partners]
    if len(kept) != len(candidates):
        logger.debug(
            "Suppressed candidates with negative matches",
            sale_id=sale_id,
            suppressed=len(candidates) - len(kept),
        )
    return kept
