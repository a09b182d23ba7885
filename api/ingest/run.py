"""Ingest trigger endpoint (manual calls, cron, or the snapshot uploader)."""

import asyncio
from typing import Any
from pydantic import ValidationError
from saleingest.models.guards import IdempotencyStatus
from saleingest.models.ingest_run import IngestRequest
from saleingest.services.idempotency import create_idempotency_guard
from saleingest.services.ingest_auth import verify_ingest_request
from saleingest.services.ingest_pipeline import run_ingest
from saleingest.services.rate_limiter import create_rate_limiter, default_rate_limit_key, rate_limit_headers
from saleingest.utils.errors import RequestValidationError, SaleIngestError
from saleingest.utils.http import error_response, get_header, get_method, json_response, parse_json_body
from saleingest.utils.logging import correlation_context, get_structured_logger, setup_logging
from saleingest.utils.logging_config import LoggingConfig
from saleingest.utils.settings import IngestSettings, get_settings

setup_logging()
logger = get_structured_logger(__name__)

IDEMPOTENCY_HEADER = "idempotency-key"


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0] if error.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "Invalid request")
    return f"{location}: {message}" if location else message


async def _execute(ingest_request: IngestRequest, settings: IngestSettings) -> dict[str, Any]:
    try:
        outcome = await run_ingest(ingest_request, settings)
    except RequestValidationError as e:
        return error_response(400, str(e))
    except SaleIngestError as e:
        logger.error("Ingest run failed", error=str(e), error_type=type(e).__name__)
        return error_response(500, "Ingest run failed")
    except Exception as e:
        logger.error("Unexpected error in ingest run", error=str(e), error_type=type(e).__name__, exc_info=True)
        return error_response(500, "Internal server error")

    return json_response(200, {
        "run_id": outcome.run_id,
        "status": outcome.status.value,
        "dry_run": ingest_request.dry_run,
        "fetched_count": outcome.fetched_count,
        "new_count": outcome.new_count,
        "updated_count": outcome.updated_count,
    })


async def handle_ingest(request: dict, settings: IngestSettings) -> dict[str, Any]:
    """Auth, rate limit, body validation and idempotency around one ingest run."""
    if get_method(request) != "POST":
        return error_response(405, "Method not allowed")

    headers = request.get("headers") or {}

    limiter = create_rate_limiter(settings)
    limit = await limiter.check_limit(f"ingest:{default_rate_limit_key(headers)}")
    if not limit.success:
        return error_response(429, "Too many requests", headers=rate_limit_headers(limit))

    if not verify_ingest_request(headers, settings.ingest_token):
        return error_response(401, "Unauthorized")

    try:
        body = parse_json_body(request)
        ingest_request = IngestRequest.model_validate(body)
    except RequestValidationError as e:
        return error_response(400, str(e))
    except ValidationError as e:
        return error_response(400, _validation_message(e))

    idempotency_key = get_header(headers, IDEMPOTENCY_HEADER)
    guard = create_idempotency_guard(settings)
    check = await guard.check_and_set(idempotency_key)

    if check.status == IdempotencyStatus.REPLAY:
        stored = check.record.response if check.record else None
        if stored:
            replay_headers = {**stored.get("headers", {}), "Idempotent-Replayed": "true"}
            return {**stored, "headers": replay_headers}
        return error_response(409, "Request with this Idempotency-Key is already in progress")

    response = await _execute(ingest_request, settings)

    if check.status == IdempotencyStatus.ACCEPTED:
        await guard.remember(idempotency_key, response)
    return response


def handler(request):
    """
    Trigger an ingest run.

    Headers: X-Ingest-Token (or Bearer), optional Idempotency-Key.
    Body: {source, site, sites, xml | markup, limit, dry_run}.
    """
    correlation_id = get_header(request.get("headers"), LoggingConfig.LOG_CORRELATION_ID_HEADER)
    with correlation_context(correlation_id):
        try:
            return asyncio.run(handle_ingest(request, get_settings()))
        except Exception as e:
            logger.error("Error handling ingest request", error=str(e), exc_info=True)
            return error_response(500, "Internal server error")

