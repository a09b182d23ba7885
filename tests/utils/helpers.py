"""Test helper functions."""

import json
from typing import Dict, Any, Iterable, Optional


def build_feed_xml(items: Iterable[Dict[str, str]]) -> str:
    """Build a minimal RSS document from {title, link, pubDate} dicts."""
    entries = []
    for item in items:
        parts = []
        for tag in ("title", "link", "pubDate"):
            if item.get(tag):
                parts.append(f"<{tag}>{item[tag]}</{tag}>")
        entries.append(f"<item>{''.join(parts)}</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<rss version=\"2.0\"><channel><title>test</title>{''.join(entries)}</channel></rss>"
    )


def numbered_feed_items(count: int) -> list:
    """Distinct valid feed items on the allowed domain."""
    return [
        {
            "title": f"Garage sale number {i}",
            "link": f"https://sfbay.craigslist.org/sfc/gms/d/sale-{i}/90{i:02d}.html",
            "pubDate": "Sat, 18 Oct 2025 09:00:00 GMT",
        }
        for i in range(1, count + 1)
    ]


def create_vercel_request(
    method: str = "POST",
    path: str = "/api/ingest/run",
    body: Optional[Any] = None,
    headers: Optional[Dict[str, str]] = None,
    query: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Create a Vercel request object for testing."""
    if body is None:
        body = {}

    if headers is None:
        headers = {
            "content-type": "application/json"
        }

    return {
        "method": method,
        "path": path,
        "headers": headers,
        "body": json.dumps(body) if isinstance(body, (dict, list)) else body,
        "query": query or {}
    }


def response_json(response: Dict[str, Any]) -> Any:
    return json.loads(response["body"])
