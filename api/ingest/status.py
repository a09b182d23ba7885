"""Recent ingest runs, for the diagnostics console."""

import asyncio
from typing import Any
from saleingest.services.ingest_auth import verify_ingest_request
from saleingest.services.supabase_client import list_ingest_runs
from saleingest.utils.errors import SupabaseError
from saleingest.utils.http import error_response, get_method, get_query, json_response
from saleingest.utils.logging import get_structured_logger, setup_logging
from saleingest.utils.settings import IngestSettings, get_settings

setup_logging()
logger = get_structured_logger(__name__)

DEFAULT_LIMIT = 5
MAX_LIMIT = 50


def parse_limit(raw: Any) -> int:
    """Clamp the requested number of runs to 1..50, defaulting to 5."""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, value))


async def handle_status(request: dict, settings: IngestSettings) -> dict[str, Any]:
    if get_method(request) != "GET":
        return error_response(405, "Method not allowed")

    if not verify_ingest_request(request.get("headers"), settings.ingest_token):
        return error_response(401, "Unauthorized")

    query = get_query(request)
    source = query.get("source") or settings.source
    limit = parse_limit(query.get("limit"))

    try:
        runs = await list_ingest_runs(source=source, limit=limit)
    except SupabaseError as e:
        logger.error("Failed to list ingest runs", error=str(e))
        return error_response(500, "Failed to load ingest runs")

    return json_response(200, {"source": source, "runs": runs})


def handler(request):
    """List the most recent runs: ?source=craigslist&limit=5."""
    try:
        return asyncio.run(handle_status(request, get_settings()))
    except Exception as e:
        logger.error("Error handling ingest status request", error=str(e), exc_info=True)
        return error_response(500, "Internal server error")
