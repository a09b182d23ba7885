"""Helpers for Vercel-style request dicts and JSON responses."""

import json
from typing import Any, Mapping, Optional
from saleingest.utils.errors import RequestValidationError


def get_header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    if not headers:
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def json_response(
    status_code: int,
    body: Any,
    headers: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    """Build a handler response with a JSON body."""
    response_headers = {"Content-Type": "application/json"}
    if headers:
        response_headers.update(headers)
    return {
        "statusCode": status_code,
        "headers": response_headers,
        "body": json.dumps(body, default=str),
    }


def error_response(status_code: int, message: str, headers: Optional[dict[str, str]] = None) -> dict[str, Any]:
    return json_response(status_code, {"error": message}, headers=headers)


def parse_json_body(request: Mapping[str, Any]) -> dict[str, Any]:
    """
    Decode the request body into a JSON object.

    Raises:
        RequestValidationError: If the body is not valid JSON or not an object
    """
    raw = request.get("body")
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise RequestValidationError("Invalid JSON")
    if not isinstance(body, dict):
        raise RequestValidationError("JSON body must be an object")
    return body


def get_query(request: Mapping[str, Any]) -> dict[str, Any]:
    return dict(request.get("query") or {})


def get_method(request: Mapping[str, Any]) -> str:
    return str(request.get("method") or "GET").upper()
