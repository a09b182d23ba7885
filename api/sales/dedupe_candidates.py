"""Duplicate check for a sale being created or edited."""

import asyncio
from typing import Any
from saleingest.services.rate_limiter import create_api_rate_limiter, default_rate_limit_key, rate_limit_headers
from saleingest.services.sale_dedupe import filter_negative_matches, find_duplicate_candidates
from saleingest.utils.errors import RequestValidationError, SupabaseError
from saleingest.utils.http import error_response, get_method, json_response, parse_json_body
from saleingest.utils.logging import get_structured_logger, setup_logging
from saleingest.utils.settings import IngestSettings, get_settings

setup_logging()
logger = get_structured_logger(__name__)

TEXT_FIELDS = ("id", "title", "date_start", "date_end", "start_at", "end_at")


def _coerce_coordinates(body: dict[str, Any]) -> dict[str, Any]:
    sale = dict(body)
    for name in ("lat", "lng"):
        value = sale.get(name)
        if value is None or value == "":
            sale[name] = None
            continue
        try:
            sale[name] = float(value)
        except (TypeError, ValueError):
            raise RequestValidationError(f"{name} must be a number")
    return sale


def _check_text_fields(sale: dict[str, Any]) -> dict[str, Any]:
    for name in TEXT_FIELDS:
        value = sale.get(name)
        if value is not None and not isinstance(value, str):
            raise RequestValidationError(f"{name} must be a string")
    return sale


async def handle_dedupe(request: dict, settings: IngestSettings) -> dict[str, Any]:
    if get_method(request) != "POST":
        return error_response(405, "Method not allowed")

    headers = request.get("headers") or {}
    limit = await create_api_rate_limiter(settings).check_limit(default_rate_limit_key(headers))
    if not limit.success:
        return error_response(429, "Too many requests", headers=rate_limit_headers(limit))

    try:
        sale = _check_text_fields(_coerce_coordinates(parse_json_body(request)))
    except RequestValidationError as e:
        return error_response(400, str(e))

    try:
        candidates = await find_duplicate_candidates(sale)
        candidates = await filter_negative_matches(sale.get("id"), candidates)
    except SupabaseError as e:
        logger.error("Duplicate check failed", error=str(e))
        return error_response(500, "Duplicate check failed")

    return json_response(200, [c.model_dump() for c in candidates])


def handler(request):
    """
    POST {id?, lat, lng, title, date_start, date_end?} and get back up to
    three likely duplicates, minus pairs already marked as distinct.
    """
    try:
        return asyncio.run(handle_dedupe(request, get_settings()))
    except Exception as e:
        logger.error("Error handling duplicate check", error=str(e), exc_info=True)
        return error_response(500, "Internal server error")
