"""Shared-secret verification for ingest endpoints."""

import hmac
import os
from typing import Mapping, Optional
from saleingest.utils.http import get_header
from saleingest.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)

TOKEN_HEADER = "x-ingest-token"


def should_bypass_auth() -> bool:
    """Check if token verification should be bypassed (dev mode)."""
    env = os.environ.get("ENVIRONMENT", "").lower()
    if env in ("development", "local"):
        return True

    bypass_flag = os.environ.get("INGEST_BYPASS_AUTH", "").lower()
    return bypass_flag == "true"


def extract_ingest_token(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    """Token from X-Ingest-Token, or a bearer Authorization header."""
    token = get_header(headers, TOKEN_HEADER)
    if token:
        return token.strip()

    authorization = get_header(headers, "authorization") or ""
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def verify_ingest_token(expected: Optional[str], provided: Optional[str]) -> bool:
    """Constant-time comparison; an unset secret never matches."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def verify_ingest_request(headers: Optional[Mapping[str, str]], expected_token: Optional[str]) -> bool:
    """
    Verify an ingest request.

    Returns True if verification passes or is bypassed, False otherwise.
    """
    if should_bypass_auth():
        logger.debug("Ingest token verification bypassed (dev mode)")
        return True

    if not expected_token:
        logger.error("INGEST_TOKEN not set; rejecting ingest request")
        return False

    provided = extract_ingest_token(headers)
    result = verify_ingest_token(expected_token, provided)
    if not result:
        logger.warning("Ingest token mismatch", token_present=bool(provided))
    return result
