"""Shared pytest fixtures and configuration."""

import os
import pytest
from unittest.mock import MagicMock

# Set test environment variables
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")
os.environ.setdefault("INGEST_TOKEN", "test-ingest-token")
os.environ.setdefault("INGEST_SITES", "https://sfbay.craigslist.org/search/gms?format=rss")
os.environ.setdefault("LOG_LEVEL", "WARNING")

TEST_INGEST_TOKEN = os.environ["INGEST_TOKEN"]


@pytest.fixture
def supabase_query():
    """
    Chainable query mock: every builder method returns the same query, so a
    test only has to set ``query.execute.return_value``.
    """
    query = MagicMock()
    for method in ("select", "insert", "update", "delete", "eq", "neq", "gte", "lte", "or_", "order", "limit"):
        getattr(query, method).return_value = query
    query.execute.return_value = MagicMock(data=[])

    client = MagicMock()
    client.table.return_value = query
    client.rpc.return_value = query
    return client, query


@pytest.fixture
def patched_supabase(supabase_query):
    """Patch the SupabaseClient context manager used by the storage functions."""
    from unittest.mock import patch

    client, query = supabase_query
    with patch("saleingest.services.supabase_client.SupabaseClient") as mock_client_class:
        mock_client_class.return_value.__aenter__.return_value = client
        mock_client_class.return_value.__aexit__.return_value = False
        yield client, query


@pytest.fixture
def ingest_settings():
    """Settings independent of the surrounding environment."""
    from saleingest.utils.settings import IngestSettings

    return IngestSettings(
        ingest_token=TEST_INGEST_TOKEN,
        sites=["https://sfbay.craigslist.org/search/gms?format=rss"],
    )


@pytest.fixture(autouse=True)
def reset_guard_stores():
    """Process-local guard stores are module singletons; isolate tests from each other."""
    from saleingest.services import idempotency, rate_limiter

    idempotency._memory_store.clear()
    rate_limiter._memory_store.clear()
    yield
    idempotency._memory_store.clear()
    rate_limiter._memory_store.clear()


@pytest.fixture
def sample_feed_xml():
    from tests.fixtures.listing_pages import RSS_FEED_XML
    return RSS_FEED_XML


@pytest.fixture
def sample_search_markup():
    from tests.fixtures.listing_pages import SEARCH_RESULTS_HTML
    return SEARCH_RESULTS_HTML


@pytest.fixture
def mock_vercel_request():
    """Mock Vercel serverless function request."""
    return {
        "method": "POST",
        "path": "/api/ingest/run",
        "headers": {
            "x-ingest-token": TEST_INGEST_TOKEN,
            "x-forwarded-for": "203.0.113.7",
            "content-type": "application/json"
        },
        "body": '{"source": "craigslist", "dry_run": true}',
        "query": {}
    }

