"""Listing link validation against the allow-listed source domain."""

import base64
import hashlib
from typing import Optional
from urllib.parse import urljoin, urlsplit

DEFAULT_ALLOWED_DOMAIN = "craigslist.org"
SOURCE_ID_MAX_LENGTH = 60


def is_allowed_host(hostname: Optional[str], allowed_domain: str = DEFAULT_ALLOWED_DOMAIN) -> bool:
    """True for the allowed domain itself or any subdomain of it."""
    if not hostname:
        return False
    host = hostname.lower().rstrip(".")
    domain = allowed_domain.lower().lstrip(".")
    return host == domain or host.endswith("." + domain)


def normalize_url(
    link: str,
    feed_base_url: str,
    allowed_domain: str = DEFAULT_ALLOWED_DOMAIN,
) -> Optional[str]:
    """
    Absolute https URL on the allowed domain, or None.

    Relative links resolve against ``feed_base_url``. Anything that is not
    https, points off-domain, or fails to parse is rejected.
    """
    if not link or not isinstance(link, str):
        return None

    try:
        resolved = urljoin(feed_base_url or "", link.strip())
        parts = urlsplit(resolved)
        if parts.scheme != "https":
            return None
        if parts.username or parts.password:
            return None
        if not is_allowed_host(parts.hostname, allowed_domain):
            return None
        # Port access raises on malformed values
        parts.port
        return parts.geturl()
    except (ValueError, TypeError):
        return None


def generate_source_id(link: str, posted_at: Optional[str]) -> str:
    """
    Deterministic natural key for a feed item.

    Derived from link and posted time (titles repeat): a SHA-256 digest of
    both, urlsafe base64 without padding, truncated to a bounded length.
    """
    source_key = f"{link}|{posted_at or ''}"
    digest = hashlib.sha256(source_key.encode("utf-8")).digest()
    encoded = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return encoded[:SOURCE_ID_MAX_LENGTH]
