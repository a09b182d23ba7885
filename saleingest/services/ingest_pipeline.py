"""
Ingest pipeline - fetch or accept listing markup, filter it and upsert sales.

One call is one run: the run row is created before any work, every stage
records its diagnostics on the run, and the run is finalized exactly once.
Per-item problems (bad links, unreadable rows, schema failures, rejected
writes) are counted and the loop continues. Storage or fetch outages, the
write deadline and cancellation finalize the run as error with the counters
reached so far, then propagate to the caller.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlsplit

from saleingest.models.ingest_run import FetchOutcome, IngestOutcome, IngestRequest, RunStatus
from saleingest.models.listing_item import RawListingItem
from saleingest.models.sale import SaleSource, SaleStatus
from saleingest.services import supabase_client
from saleingest.services.feed_fetcher import FeedFetcher
from saleingest.services.ingest_runs import IngestRunTracker
from saleingest.services.item_normalizer import normalize_listing_item, validate_normalized_sale
from saleingest.services.link_normalizer import generate_source_id, is_allowed_host, normalize_url
from saleingest.services.listing_parser import parse_feed_items, parse_listing_markup
from saleingest.utils.errors import (
    FetchError,
    IngestTimeoutError,
    RequestValidationError,
    SaleRejectedError,
    SupabaseError,
)
from saleingest.utils.logging import get_structured_logger, log_timing, sanitize_text
from saleingest.utils.settings import IngestSettings

logger = get_structured_logger(__name__)

SAMPLE_SIZE = 3
UNTITLED_SALE = "Untitled Sale"


@dataclass
class SourceDocument:
    """Markup for one site, either supplied by the caller or fetched."""
    site: str
    body: str
    is_feed: bool


@dataclass
class FilterStats:
    kept: int = 0
    invalid_url: int = 0
    parse_error: int = 0
    duplicate_source_id: int = 0
    validation_failed: int = 0
    write_rejected: int = 0
    invalid_samples: list[dict[str, Any]] = field(default_factory=list)
    validation_samples: list[dict[str, Any]] = field(default_factory=list)

    def as_details(self) -> dict[str, Any]:
        return {
            "filter": {
                "kept": self.kept,
                "invalid_url": self.invalid_url,
                "parse_error": self.parse_error,
                "duplicate_source_id": self.duplicate_source_id,
                "validation_failed": self.validation_failed,
                "write_rejected": self.write_rejected,
            },
            "invalid_samples": self.invalid_samples,
            "validation_samples": self.validation_samples,
        }


@dataclass
class PendingWrite:
    source_id: str
    record: dict[str, Any]


def _monotonic() -> float:
    return time.monotonic()


def resolve_sites(request: IngestRequest, settings: IngestSettings) -> list[str]:
    """Sites the run reads from: the supplied site, requested sites, or configured ones."""
    if request.xml or request.markup:
        return [request.site]
    if request.sites:
        return list(request.sites)
    if request.site:
        return [request.site]
    return list(settings.sites)


def ensure_fetchable_site(site: str, allowed_domain: str) -> None:
    """Only https URLs on the allow-listed domain are fetched."""
    parts = urlsplit(site or "")
    if parts.scheme != "https" or not is_allowed_host(parts.hostname, allowed_domain):
        raise RequestValidationError(f"Site not allowed: {site}")


def looks_like_feed(content_type: str, body: str) -> bool:
    """RSS/XML by content type or by the document prolog."""
    if "xml" in (content_type or "").lower():
        return True
    head = body.lstrip()[:200].lower()
    return head.startswith("<?xml") or head.startswith("<rss")


def context_label_for(site: str) -> str:
    """Human label for where a listing was found (the site host)."""
    return urlsplit(site).hostname or site


def fetch_details(outcomes: list[FetchOutcome]) -> dict[str, Any]:
    succeeded = sum(1 for o in outcomes if o.success)
    return {
        "attempted": len(outcomes),
        "succeeded": succeeded,
        "failed": len(outcomes) - succeeded,
        "sites": [o.model_dump() for o in outcomes],
    }


async def _collect_documents(
    request: IngestRequest,
    sites: list[str],
    settings: IngestSettings,
    fetcher: Optional[FeedFetcher],
    tracker: IngestRunTracker,
) -> list[SourceDocument]:
    if request.xml:
        tracker.update_details(via="snapshot", site=request.site)
        return [SourceDocument(site=request.site, body=request.xml, is_feed=True)]
    if request.markup:
        tracker.update_details(via="markup", site=request.site)
        return [SourceDocument(site=request.site, body=request.markup, is_feed=False)]

    tracker.update_details(via="fetch", sites=sites)
    if fetcher is None:
        async with FeedFetcher(
            timeout=settings.fetch_timeout_seconds,
            max_attempts=settings.fetch_max_attempts,
        ) as own_fetcher:
            outcomes = await own_fetcher.fetch_all(sites)
    else:
        outcomes = await fetcher.fetch_all(sites)

    tracker.update_details(fetch=fetch_details(outcomes))
    documents = [
        SourceDocument(site=o.url, body=o.body or "", is_feed=looks_like_feed(o.content_type, o.body or ""))
        for o in outcomes
        if o.success
    ]
    if not documents:
        errors = "; ".join(f"{o.url}: {o.error}" for o in outcomes)
        raise FetchError(f"All site fetches failed: {errors}")
    return documents


def _parse_documents(
    documents: list[SourceDocument],
    request: IngestRequest,
    settings: IngestSettings,
) -> list[tuple[SourceDocument, RawListingItem]]:
    parsed: list[tuple[SourceDocument, RawListingItem]] = []
    for document in documents:
        if document.is_feed:
            items = parse_feed_items(document.body, limit=request.limit)
        else:
            items = parse_listing_markup(
                document.body,
                limit=request.limit or settings.parse_limit,
                base_url=document.site or settings.default_base_url,
            )
        parsed.extend((document, item) for item in items)
    return parsed


def _filter_items(
    parsed: list[tuple[SourceDocument, RawListingItem]],
    source: SaleSource,
    settings: IngestSettings,
    stats: FilterStats,
) -> list[PendingWrite]:
    pending: list[PendingWrite] = []
    seen_source_ids: set[str] = set()
    now = supabase_client.utc_now_iso()

    for document, item in parsed:
        try:
            title = item.title or (UNTITLED_SALE if document.is_feed else "")
            if not title:
                stats.parse_error += 1
                continue

            link = normalize_url(item.url or "", document.site, settings.allowed_domain)
            if not link:
                stats.invalid_url += 1
                if len(stats.invalid_samples) < SAMPLE_SIZE:
                    stats.invalid_samples.append({"title": title, "link": item.url})
                continue

            source_id = generate_source_id(link, item.posted_at)
            if source_id in seen_source_ids:
                stats.duplicate_source_id += 1
                continue
            seen_source_ids.add(source_id)

            normalized = normalize_listing_item(
                item.model_copy(update={"title": title, "url": link}),
                context_label_for(document.site),
                source,
            )
            validation = validate_normalized_sale(normalized)
            if not validation.valid:
                stats.validation_failed += 1
                if len(stats.validation_samples) < SAMPLE_SIZE:
                    stats.validation_samples.append({"title": title, "errors": validation.errors})
                continue

            record = {
                **normalized,
                "status": SaleStatus.ACTIVE.value,
                "posted_at": item.posted_at or now,
            }
            pending.append(PendingWrite(source_id=source_id, record=record))
            stats.kept += 1
        except Exception as e:
            stats.parse_error += 1
            logger.warning(
                "Listing item could not be processed",
                item_id=item.id,
                error=str(e),
                error_type=type(e).__name__,
            )

    return pending


async def _write_sales(
    pending: list[PendingWrite],
    source: SaleSource,
    settings: IngestSettings,
    tracker: IngestRunTracker,
    stats: FilterStats,
) -> None:
    deadline = _monotonic() + settings.deadline_seconds
    chunk_size = settings.write_chunk_size

    for chunk_start in range(0, len(pending), chunk_size):
        if chunk_start > 0 and _monotonic() >= deadline:
            raise IngestTimeoutError(
                f"Deadline of {settings.deadline_seconds}s exceeded after "
                f"{chunk_start} of {len(pending)} writes"
            )

        for write in pending[chunk_start:chunk_start + chunk_size]:
            try:
                result = await supabase_client.upsert_sale_by_source_key(
                    source.value, write.source_id, write.record
                )
            except SaleRejectedError as e:
                stats.write_rejected += 1
                logger.warning(
                    "Sale write rejected",
                    source_id=write.source_id,
                    title=sanitize_text(write.record.get("title"), max_length=80),
                    error=str(e),
                )
                continue

            if result == "inserted":
                tracker.add_counts(new=1)
            else:
                tracker.add_counts(updated=1)

        logger.debug(
            "Write chunk completed",
            run_id=tracker.run_id,
            chunk_start=chunk_start,
            chunk_size=chunk_size,
        )


async def _execute_run(
    request: IngestRequest,
    sites: list[str],
    source: SaleSource,
    settings: IngestSettings,
    fetcher: Optional[FeedFetcher],
    tracker: IngestRunTracker,
) -> None:
    stats = FilterStats()
    try:
        documents = await _collect_documents(request, sites, settings, fetcher, tracker)

        parsed = _parse_documents(documents, request, settings)
        tracker.add_counts(fetched=len(parsed))
        tracker.update_details(parse={
            "item_count": len(parsed),
            "samples": [
                {"title": item.title, "link": item.url, "posted_at": item.posted_at}
                for _, item in parsed[:SAMPLE_SIZE]
            ],
        })

        pending = _filter_items(parsed, source, settings, stats)
        tracker.update_details(**stats.as_details())

        if request.dry_run:
            tracker.update_details(would_write=len(pending))
            return

        with log_timing("write_sales", logger=logger, run_id=tracker.run_id, pending=len(pending)):
            await _write_sales(pending, source, settings, tracker, stats)
    finally:
        if tracker.run is not None:
            tracker.update_details(**stats.as_details())


async def _finish_after_failure(tracker: IngestRunTracker, last_error: str) -> None:
    try:
        await tracker.finish(RunStatus.ERROR, last_error=last_error)
    except SupabaseError as finish_error:
        logger.error(
            "Failed to finalize ingest run",
            run_id=tracker.run_id,
            error=str(finish_error),
        )


async def run_ingest(
    request: IngestRequest,
    settings: IngestSettings,
    fetcher: Optional[FeedFetcher] = None,
) -> IngestOutcome:
    """
    Execute one ingest run.

    Args:
        request: Validated ingest request
        settings: Ingest settings (domain allow-list, limits, deadline)
        fetcher: Optional fetcher used when the request carries no markup

    Returns:
        The finalized run summary (status ok)

    Raises:
        RequestValidationError: Unknown source, nothing to ingest or a site outside
            the allowed domain; no run is created
        SupabaseError: Storage failure; the run is finalized as error first
        FetchError: Every site fetch failed; the run is finalized as error first
        IngestTimeoutError: Write deadline exceeded; the run is finalized as error first
    """
    try:
        source = SaleSource(request.source)
    except ValueError:
        raise RequestValidationError(f"Unknown source: {request.source}")

    sites = resolve_sites(request, settings)
    if not sites:
        raise RequestValidationError("No site supplied and no INGEST_SITES configured")
    if not (request.xml or request.markup):
        for site in sites:
            ensure_fetchable_site(site, settings.allowed_domain)

    tracker = IngestRunTracker()
    await tracker.start(source.value, dry_run=request.dry_run)

    try:
        await _execute_run(request, sites, source, settings, fetcher, tracker)
    except asyncio.CancelledError:
        await _finish_after_failure(tracker, "CancelledError: ingest run was cancelled")
        raise
    except Exception as e:
        logger.error(
            "Ingest run failed",
            run_id=tracker.run_id,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        await _finish_after_failure(tracker, f"{type(e).__name__}: {e}")
        raise

    run = await tracker.finish(RunStatus.OK)
    return IngestOutcome(
        run_id=run.id,
        status=run.status,
        fetched_count=run.fetched_count,
        new_count=run.new_count,
        updated_count=run.updated_count,
        last_error=run.last_error,
        details=run.details,
    )
