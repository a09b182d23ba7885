"""Tolerant parsers turning listing markup (HTML result pages, RSS feeds) into raw items."""

import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional
from urllib.parse import urljoin
from bs4 import BeautifulSoup, Tag
from ulid import ULID
from saleingest.models.listing_item import RawListingItem
from saleingest.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)

DEFAULT_BASE_URL = "https://sfbay.craigslist.org"

ROW_SELECTOR = ".result-row"
TITLE_SELECTOR = "a.result-title, a.posting-title"
DATE_SELECTOR = (
    "time.result-date[datetime], span.result-date[datetime], "
    "time.posting-date[datetime], span.posting-date[datetime]"
)
PRICE_SELECTOR = "span.result-price, span.posting-price"

_DOLLAR_AMOUNT = re.compile(r"\$\s*(\d[\d,]*)")


def parse_price(text: Optional[str]) -> Optional[float]:
    """
    Lowest dollar amount in a price field.

    "$5 - $50" yields 5; the literal "FREE" (and text without amounts) yields None.
    """
    if not text:
        return None
    text = text.strip()
    if text == "FREE":
        return None

    amounts = [int(m.replace(",", "")) for m in _DOLLAR_AMOUNT.findall(text) if m.replace(",", "")]
    if not amounts:
        return None
    return float(min(amounts))


def _clean_text(value: str) -> str:
    return " ".join(value.split())


def _new_batch_id() -> str:
    return str(ULID()).lower()


def _parse_row(row: Tag, item_id: str, base_url: str, parsed_at: str) -> RawListingItem:
    title_el = row.select_one(TITLE_SELECTOR)
    title = _clean_text(title_el.get_text(" ")) if title_el else ""
    href = (title_el.get("href") or "").strip() if title_el else ""

    date_el = row.select_one(DATE_SELECTOR)
    posted_at = (date_el.get("datetime") or "").strip() if date_el else ""

    price_el = row.select_one(PRICE_SELECTOR)
    price = parse_price(price_el.get_text()) if price_el else None

    url = None
    if href:
        url = href if href.startswith("http") else urljoin(base_url, href)

    return RawListingItem(
        id=item_id,
        title=title,
        url=url,
        posted_at=posted_at or parsed_at,
        price=price,
        city=None,
    )


def parse_listing_markup(
    markup: str,
    limit: int = 20,
    base_url: str = DEFAULT_BASE_URL,
) -> list[RawListingItem]:
    """
    Extract listing rows from an HTML search result page.

    Never raises: each row is parsed in isolation, a row that cannot be read
    yields an item with an empty title, and rows beyond ``limit`` are skipped.
    """
    if not markup or limit <= 0:
        return []

    try:
        soup = BeautifulSoup(markup, "lxml")
        rows = soup.select(ROW_SELECTOR)[:limit]
    except Exception as e:
        logger.warning("Listing markup could not be parsed", error=str(e), markup_length=len(markup))
        return []

    batch_id = _new_batch_id()
    parsed_at = datetime.now(timezone.utc).isoformat()
    items: list[RawListingItem] = []

    for index, row in enumerate(rows):
        item_id = f"cl_{batch_id}_{index}"
        try:
            items.append(_parse_row(row, item_id, base_url, parsed_at))
        except Exception as e:
            logger.debug("Listing row could not be parsed", row_index=index, error=str(e))
            items.append(RawListingItem(id=item_id, title="", posted_at=parsed_at))

    logger.debug("Parsed listing markup", rows_found=len(rows), items=len(items), limit=limit)
    return items


def _child_text(item: Tag, *names: str) -> str:
    for child_name in names:
        child = item.find(child_name)
        if child is not None:
            text = child.get_text().strip()
            if text:
                return text
    return ""


def normalize_feed_date(value: str) -> Optional[str]:
    """RFC 822 (pubDate) or ISO dates as an ISO-8601 UTC string; None if unreadable."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def parse_feed_items(xml: str, limit: Optional[int] = None) -> list[RawListingItem]:
    """
    Extract <item> entries from an RSS document.

    Missing titles stay empty and missing dates stay None so the caller can
    derive a stable natural key from what the feed actually published.
    """
    if not xml:
        return []

    try:
        soup = BeautifulSoup(xml, "xml")
        entries = soup.find_all("item")
    except Exception as e:
        logger.warning("Feed could not be parsed", error=str(e), feed_length=len(xml))
        return []

    if limit is not None:
        entries = entries[:limit]

    batch_id = _new_batch_id()
    items: list[RawListingItem] = []
    for index, entry in enumerate(entries):
        item_id = f"feed_{batch_id}_{index}"
        try:
            link = _child_text(entry, "link", "guid")
            items.append(RawListingItem(
                id=item_id,
                title=_clean_text(_child_text(entry, "title")),
                url=link or None,
                posted_at=normalize_feed_date(_child_text(entry, "pubDate", "published", "date")),
                price=None,
            ))
        except Exception as e:
            logger.debug("Feed item could not be parsed", item_index=index, error=str(e))
            items.append(RawListingItem(id=item_id, title=""))

    return items
