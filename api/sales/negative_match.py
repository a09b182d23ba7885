"""Record or look up "these two sales are not duplicates"."""

import asyncio
from typing import Any, Mapping, Optional
from saleingest.services.rate_limiter import create_api_rate_limiter, default_rate_limit_key, rate_limit_headers
from saleingest.services.sale_dedupe import has_negative_match, record_negative_match
from saleingest.utils.errors import RequestValidationError, SupabaseError
from saleingest.utils.http import error_response, get_method, get_query, json_response, parse_json_body
from saleingest.utils.logging import get_structured_logger, setup_logging
from saleingest.utils.settings import IngestSettings, get_settings

setup_logging()
logger = get_structured_logger(__name__)


def extract_pair(params: Mapping[str, Any]) -> tuple[str, str]:
    """
    Sale ids from {saleId, otherSaleId} or {saleIdA, saleIdB}.

    Raises:
        RequestValidationError: If either id is missing
    """
    first: Optional[Any] = params.get("saleId") or params.get("saleIdA")
    second: Optional[Any] = params.get("otherSaleId") or params.get("saleIdB")
    if not first or not second:
        raise RequestValidationError("Missing sale IDs")
    return str(first), str(second)


async def handle_negative_match(request: dict, settings: IngestSettings) -> dict[str, Any]:
    method = get_method(request)
    if method not in ("GET", "POST"):
        return error_response(405, "Method not allowed")

    headers = request.get("headers") or {}
    limit = await create_api_rate_limiter(settings).check_limit(default_rate_limit_key(headers))
    if not limit.success:
        return error_response(429, "Too many requests", headers=rate_limit_headers(limit))

    try:
        if method == "GET":
            sale_id, other_sale_id = extract_pair(get_query(request))
            exists = await has_negative_match(sale_id, other_sale_id)
            return json_response(200, {"exists": exists})

        body = parse_json_body(request)
        sale_id, other_sale_id = extract_pair(body)
        if sale_id == other_sale_id:
            return error_response(400, "A sale cannot be matched with itself")

        success = await record_negative_match(sale_id, other_sale_id, body.get("userId"))
        if not success:
            return error_response(500, "Failed to record negative match")
        return json_response(200, {"success": True})
    except RequestValidationError as e:
        return error_response(400, str(e))
    except SupabaseError as e:
        logger.error("Negative match storage failed", error=str(e))
        return error_response(500, "Failed to record negative match")


def handler(request):
    """POST {saleId, otherSaleId, userId?} to record; GET ?saleIdA=&saleIdB= to check."""
    try:
        return asyncio.run(handle_negative_match(request, get_settings()))
    except Exception as e:
        logger.error("Error handling negative match request", error=str(e), exc_info=True)
        return error_response(500, "Internal server error")
