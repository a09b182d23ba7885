"""Tests for the ingest pipeline: filtering, writes and run finalization."""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from saleingest.models.ingest_run import FetchOutcome, IngestRequest, RunStatus
from saleingest.services import ingest_pipeline
from saleingest.services.ingest_pipeline import ensure_fetchable_site, looks_like_feed, resolve_sites, run_ingest
from saleingest.utils.errors import (
    FetchError,
    IngestTimeoutError,
    RequestValidationError,
    SaleRejectedError,
    SupabaseError,
)
from tests.fixtures.listing_pages import FEED_SITE, SEARCH_SITE
from tests.utils.assertions import assert_finalized_run
from tests.utils.helpers import build_feed_xml, numbered_feed_items

CREATE = "saleingest.services.supabase_client.create_ingest_run"
UPDATE = "saleingest.services.supabase_client.update_ingest_run"
UPSERT = "saleingest.services.supabase_client.upsert_sale_by_source_key"


@pytest.fixture
def run_storage():
    """Patch run storage; yields the update mock so tests can read the final row."""
    with patch(CREATE, new_callable=AsyncMock, return_value={}) as mock_create, \
         patch(UPDATE, new_callable=AsyncMock, return_value={}) as mock_update:
        yield mock_create, mock_update


def _final_update(mock_update):
    return mock_update.call_args[0][1]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_snapshot_ingest_filters_and_upserts(run_storage, ingest_settings, sample_feed_xml):
    """Test invalid links and repeated items are counted while valid ones are upserted."""
    _, mock_update = run_storage
    request = IngestRequest(site=FEED_SITE, xml=sample_feed_xml)

    with patch(UPSERT, new_callable=AsyncMock, side_effect=["inserted", "updated", "inserted"]) as mock_upsert:
        outcome = await run_ingest(request, ingest_settings)

    assert outcome.status == RunStatus.OK
    assert outcome.fetched_count == 5
    assert outcome.new_count == 2
    assert outcome.updated_count == 1

    details = outcome.details
    assert details["via"] == "snapshot"
    assert details["parse"]["item_count"] == 5
    assert len(details["parse"]["samples"]) == 3
    assert details["filter"] == {
        "kept": 3,
        "invalid_url": 1,
        "parse_error": 0,
        "duplicate_source_id": 1,
        "validation_failed": 0,
        "write_rejected": 0,
    }
    assert details["invalid_samples"] == [
        {"title": "Huge sale, see my site", "link": "https://sales.example.com/8803.html"}
    ]

    calls = mock_upsert.call_args_list
    assert [c[0][0] for c in calls] == ["craigslist"] * 3
    second_record = calls[1][0][2]
    assert second_record["url"] == "https://sfbay.craigslist.org/sfc/gms/d/antique-books/8802.html"
    untitled_record = calls[2][0][2]
    assert untitled_record["title"] == "Untitled Sale"
    assert untitled_record["status"] == "active"
    assert "start_at" not in untitled_record

    assert_finalized_run(_final_update(mock_update), "ok")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_source_id_stable_across_runs(run_storage, ingest_settings, sample_feed_xml):
    """Test re-ingesting the same feed upserts the same natural keys."""
    request = IngestRequest(site=FEED_SITE, xml=sample_feed_xml)

    with patch(UPSERT, new_callable=AsyncMock, return_value="inserted") as mock_upsert:
        await run_ingest(request, ingest_settings)
        await run_ingest(request, ingest_settings)

    keys = [c[0][1] for c in mock_upsert.call_args_list]
    assert keys[:3] == keys[3:]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_markup_ingest(run_storage, ingest_settings, sample_search_markup):
    """Test HTML result pages go through the same filters."""
    request = IngestRequest(site=SEARCH_SITE, markup=sample_search_markup)

    with patch(UPSERT, new_callable=AsyncMock, return_value="inserted") as mock_upsert:
        outcome = await run_ingest(request, ingest_settings)

    assert outcome.details["via"] == "markup"
    assert outcome.fetched_count == 5
    assert outcome.new_count == 3
    assert outcome.details["filter"]["parse_error"] == 1
    assert outcome.details["filter"]["invalid_url"] == 1

    first_record = mock_upsert.call_args_list[0][0][2]
    assert first_record["price_min"] == 5.0
    assert first_record["price_max"] == 5.0
    assert {"moving", "furniture", "tools", "craigslist"} <= set(first_record["tags"])


@pytest.mark.unit
@pytest.mark.asyncio
async def test_dry_run_writes_nothing(run_storage, ingest_settings, sample_feed_xml):
    mock_create, _ = run_storage
    request = IngestRequest(site=FEED_SITE, xml=sample_feed_xml, dry_run=True)

    with patch(UPSERT, new_callable=AsyncMock) as mock_upsert:
        outcome = await run_ingest(request, ingest_settings)

    mock_upsert.assert_not_called()
    assert outcome.new_count == 0
    assert outcome.updated_count == 0
    assert outcome.details["would_write"] == 3
    assert mock_create.call_args[0][0]["dry_run"] is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_storage_failure_mid_run_keeps_partial_counters(run_storage, ingest_settings):
    """Test item 3 of 5 failing in storage finalizes the run as error with new_count 2."""
    _, mock_update = run_storage
    request = IngestRequest(site=FEED_SITE, xml=build_feed_xml(numbered_feed_items(5)))

    with patch(
        UPSERT,
        new_callable=AsyncMock,
        side_effect=["inserted", "inserted", SupabaseError("connection refused"), "inserted", "inserted"],
    ) as mock_upsert:
        with pytest.raises(SupabaseError):
            await run_ingest(request, ingest_settings)

    assert mock_upsert.call_count == 3
    updates = _final_update(mock_update)
    assert_finalized_run(updates, "error")
    assert updates["new_count"] == 2
    assert updates["fetched_count"] == 5
    assert "connection refused" in updates["last_error"]
    assert updates["details"]["filter"]["kept"] == 5


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rejected_write_does_not_abort(run_storage, ingest_settings):
    """Test a constraint violation on one sale is counted and the loop continues."""
    request = IngestRequest(site=FEED_SITE, xml=build_feed_xml(numbered_feed_items(3)))

    with patch(
        UPSERT,
        new_callable=AsyncMock,
        side_effect=["inserted", SaleRejectedError("violates check constraint"), "updated"],
    ):
        outcome = await run_ingest(request, ingest_settings)

    assert outcome.status == RunStatus.OK
    assert outcome.new_count == 1
    assert outcome.updated_count == 1
    assert outcome.details["filter"]["write_rejected"] == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_validation_failures_are_sampled(run_storage, ingest_settings):
    long_title = "Garage sale " + "x" * 120
    request = IngestRequest(site=FEED_SITE, xml=build_feed_xml([
        {"title": long_title, "link": "https://sfbay.craigslist.org/d/1.html"},
        {"title": "Yard sale", "link": "https://sfbay.craigslist.org/d/2.html"},
    ]))

    with patch(UPSERT, new_callable=AsyncMock, return_value="inserted"):
        outcome = await run_ingest(request, ingest_settings)

    assert outcome.new_count == 1
    assert outcome.details["filter"]["validation_failed"] == 1
    sample = outcome.details["validation_samples"][0]
    assert sample["title"] == long_title
    assert any(e.startswith("title:") for e in sample["errors"])


@pytest.mark.unit
@pytest.mark.asyncio
async def test_deadline_checked_between_chunks(run_storage, ingest_settings):
    """Test an exceeded deadline stops before the next chunk and keeps partial counts."""
    _, mock_update = run_storage
    settings = ingest_settings.model_copy(update={"write_chunk_size": 2, "deadline_seconds": 5})
    request = IngestRequest(site=FEED_SITE, xml=build_feed_xml(numbered_feed_items(5)))

    with patch(UPSERT, new_callable=AsyncMock, return_value="inserted") as mock_upsert, \
         patch.object(ingest_pipeline, "_monotonic", side_effect=[0.0, 1.0, 10.0]):
        with pytest.raises(IngestTimeoutError):
            await run_ingest(request, settings)

    assert mock_upsert.call_count == 4
    updates = _final_update(mock_update)
    assert_finalized_run(updates, "error")
    assert updates["new_count"] == 4
    assert "IngestTimeoutError" in updates["last_error"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancellation_finalizes_run(run_storage, ingest_settings):
    _, mock_update = run_storage
    request = IngestRequest(site=FEED_SITE, xml=build_feed_xml(numbered_feed_items(2)))

    with patch(UPSERT, new_callable=AsyncMock, side_effect=["inserted", asyncio.CancelledError()]):
        with pytest.raises(asyncio.CancelledError):
            await run_ingest(request, ingest_settings)

    updates = _final_update(mock_update)
    assert_finalized_run(updates, "error")
    assert updates["new_count"] == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fetch_path_uses_successful_sites(run_storage, ingest_settings, sample_feed_xml):
    """Test fetched feeds are parsed and failed sites are reported in details."""
    fetcher = MagicMock()
    fetcher.fetch_all = AsyncMock(return_value=[
        FetchOutcome(url=FEED_SITE, status=200, content_type="application/rss+xml",
                     bytes=len(sample_feed_xml), success=True, body=sample_feed_xml),
        FetchOutcome(url="https://seattle.craigslist.org/search/gms?format=rss",
                     status=403, success=False, error="HTTP 403"),
    ])
    request = IngestRequest(sites=[FEED_SITE, "https://seattle.craigslist.org/search/gms?format=rss"])

    with patch(UPSERT, new_callable=AsyncMock, return_value="inserted"):
        outcome = await run_ingest(request, ingest_settings, fetcher=fetcher)

    assert outcome.details["via"] == "fetch"
    assert outcome.details["fetch"]["attempted"] == 2
    assert outcome.details["fetch"]["succeeded"] == 1
    assert outcome.details["fetch"]["failed"] == 1
    assert "body" not in outcome.details["fetch"]["sites"][0]
    assert outcome.new_count == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_all_fetches_failing_is_fatal(run_storage, ingest_settings):
    _, mock_update = run_storage
    fetcher = MagicMock()
    fetcher.fetch_all = AsyncMock(return_value=[
        FetchOutcome(url=FEED_SITE, status=503, success=False, error="HTTP 503"),
    ])

    with pytest.raises(FetchError):
        await run_ingest(IngestRequest(), ingest_settings, fetcher=fetcher)

    updates = _final_update(mock_update)
    assert_finalized_run(updates, "error")
    assert updates["details"]["fetch"]["failed"] == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_run_creation_failure_propagates(ingest_settings, sample_feed_xml):
    with patch(CREATE, new_callable=AsyncMock, side_effect=SupabaseError("down")), \
         patch(UPSERT, new_callable=AsyncMock) as mock_upsert:
        with pytest.raises(SupabaseError):
            await run_ingest(IngestRequest(site=FEED_SITE, xml=sample_feed_xml), ingest_settings)

    mock_upsert.assert_not_called()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_source_rejected_before_run(ingest_settings):
    with patch(CREATE, new_callable=AsyncMock) as mock_create:
        with pytest.raises(RequestValidationError):
            await run_ingest(IngestRequest(source="nextdoor", site=FEED_SITE, xml="<rss/>"), ingest_settings)

    mock_create.assert_not_called()


@pytest.mark.unit
def test_resolve_sites(ingest_settings):
    assert resolve_sites(IngestRequest(site=FEED_SITE, xml="<rss/>"), ingest_settings) == [FEED_SITE]
    assert resolve_sites(IngestRequest(sites=["https://a.craigslist.org"]), ingest_settings) == [
        "https://a.craigslist.org"
    ]
    assert resolve_sites(IngestRequest(), ingest_settings) == ingest_settings.sites


@pytest.mark.unit
def test_looks_like_feed():
    assert looks_like_feed("application/rss+xml; charset=utf-8", "")
    assert looks_like_feed("text/plain", '<?xml version="1.0"?><rss/>')
    assert not looks_like_feed("text/html", "<html></html>")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_listings_with_shared_link_prefix_all_written(run_storage, ingest_settings):
    """Test a dozen listings from one area and category are each written once."""
    request = IngestRequest(site=FEED_SITE, xml=build_feed_xml(numbered_feed_items(12)))

    with patch(UPSERT, new_callable=AsyncMock, return_value="inserted") as mock_upsert:
        outcome = await run_ingest(request, ingest_settings)

    assert outcome.new_count == 12
    assert outcome.details["filter"]["kept"] == 12
    assert outcome.details["filter"]["duplicate_source_id"] == 0
    assert len({c[0][1] for c in mock_upsert.call_args_list}) == 12


@pytest.mark.unit
@pytest.mark.parametrize("site", [
    "http://sfbay.craigslist.org/search/gms?format=rss",
    "https://169.254.169.254/latest/meta-data/",
    "https://internal.example.com/admin",
    "https://craigslist.org.evil.test/search",
    "file:///etc/passwd",
    "",
])
def test_ensure_fetchable_site_rejects(site):
    with pytest.raises(RequestValidationError, match="Site not allowed"):
        ensure_fetchable_site(site, "craigslist.org")


@pytest.mark.unit
def test_ensure_fetchable_site_accepts_subdomains():
    ensure_fetchable_site(FEED_SITE, "craigslist.org")
    ensure_fetchable_site("https://craigslist.org/search/gms", "craigslist.org")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_disallowed_site_rejected_before_fetch(run_storage, ingest_settings):
    """Test a requested site off the allowed domain is refused without a run or a fetch."""
    mock_create, _ = run_storage
    fetcher = MagicMock()
    fetcher.fetch_all = AsyncMock()
    request = IngestRequest(sites=[FEED_SITE, "https://10.0.0.5/private"])

    with pytest.raises(RequestValidationError, match="Site not allowed: https://10.0.0.5/private"):
        await run_ingest(request, ingest_settings, fetcher=fetcher)

    fetcher.fetch_all.assert_not_called()
    mock_create.assert_not_called()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_disallowed_configured_site_rejected(run_storage, ingest_settings):
    mock_create, _ = run_storage
    settings = ingest_settings.model_copy(update={"sites": ["http://sfbay.craigslist.org/search/gms"]})
    fetcher = MagicMock()
    fetcher.fetch_all = AsyncMock()

    with pytest.raises(RequestValidationError):
        await run_ingest(IngestRequest(), settings, fetcher=fetcher)

    fetcher.fetch_all.assert_not_called()
    mock_create.assert_not_called()
