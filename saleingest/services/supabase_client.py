"""Supabase client wrapper and the sale storage operations used by ingestion."""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Literal, Optional
from supabase import create_client, Client
from supabase.client import ClientOptions
from saleingest.utils.errors import SaleRejectedError, SupabaseError
from saleingest.utils.geo import BoundingBox

logger = logging.getLogger(__name__)

SALES_TABLE = "sales"
NEGATIVE_MATCHES_TABLE = "negative_matches"
INGEST_RUNS_TABLE = "ingest_runs"
IDEMPOTENCY_TABLE = "idempotency_keys"

# Global client instance (singleton pattern)
_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """Get or create Supabase client singleton."""
    global _client

    if _client is None:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")

        if not url or not key:
            raise SupabaseError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")

        options = ClientOptions(
            auto_refresh_token=False,
            persist_session=False,
        )

        _client = create_client(url, key, options)
        logger.info("Supabase client initialized", extra={"supabase_url": url})

    return _client


class SupabaseClient:
    """Async context manager for Supabase client."""

    def __init__(self):
        self.client: Optional[Client] = None

    async def __aenter__(self) -> Client:
        self.client = get_supabase_client()
        return self.client

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            logger.error(
                "Supabase operation error",
                extra={"error": str(exc_val), "error_type": exc_type.__name__}
            )
        return False


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_constraint_violation(error: Exception) -> bool:
    """True when Postgres refused a row (class 23 integrity constraint violation)."""
    code = str(getattr(error, "code", "") or "")
    if code.startswith("23"):
        return True
    return "duplicate key" in str(error).lower()


def is_unique_violation(error: Exception) -> bool:
    code = str(getattr(error, "code", "") or "")
    return code == "23505" or "duplicate key" in str(error).lower()


def _storage_error(action: str, error: Exception) -> SupabaseError:
    if isinstance(error, SupabaseError):
        return error
    if is_constraint_violation(error):
        return SaleRejectedError(f"Failed to {action}: {error}")
    return SupabaseError(f"Failed to {action}: {error}")


# Sales table operations
async def query_sales_in_bounding_box(
    box: BoundingBox,
    status: str = "published",
    exclude_id: Optional[str] = None,
    limit: int = 50,
) -> list[dict]:
    """Sales with coordinates inside the box; a coarse superset of any radius."""
    async with SupabaseClient() as client:
        try:
            query = (
                client.table(SALES_TABLE)
                .select("*")
                .eq("status", status)
                .gte("lat", box.lat_min)
                .lte("lat", box.lat_max)
                .gte("lng", box.lng_min)
                .lte("lng", box.lng_max)
            )
            if exclude_id:
                query = query.neq("id", exclude_id)
            result = query.limit(limit).execute()
            return result.data if result.data else []
        except Exception as e:
            raise _storage_error("query sales in bounding box", e)


async def upsert_sale_by_source_key(
    source: str,
    source_id: str,
    record: dict,
) -> Literal["inserted", "updated"]:
    """Insert or update the sale identified by its natural key (source, source_id)."""
    async with SupabaseClient() as client:
        try:
            existing = (
                client.table(SALES_TABLE)
                .select("id")
                .eq("source", source)
                .eq("source_id", source_id)
                .limit(1)
                .execute()
            )
            now = utc_now_iso()
            row = {**record, "source": source, "source_id": source_id, "last_seen_at": now}

            if existing.data:
                client.table(SALES_TABLE).update(row).eq("id", existing.data[0]["id"]).execute()
                return "updated"

            try:
                client.table(SALES_TABLE).insert({**row, "first_seen_at": now}).execute()
                return "inserted"
            except Exception as e:
                if not is_unique_violation(e):
                    raise

            # A concurrent run inserted the same natural key first.
            (
                client.table(SALES_TABLE)
                .update(row)
                .eq("source", source)
                .eq("source_id", source_id)
                .execute()
            )
            return "updated"
        except Exception as e:
            raise _storage_error("upsert sale", e)


# Negative matches table operations
async def insert_negative_match(row: dict) -> bool:
    """Insert a canonical negative match row; an existing row counts as success."""
    async with SupabaseClient() as client:
        try:
            client.table(NEGATIVE_MATCHES_TABLE).insert(row).execute()
            return True
        except Exception as e:
            if is_constraint_violation(e):
                return True
            raise SupabaseError(f"Failed to insert negative match: {e}")


async def negative_match_exists(sale_id_a: str, sale_id_b: str) -> bool:
    """Check for the canonical row of an already-ordered pair."""
    async with SupabaseClient() as client:
        try:
            result = (
                client.table(NEGATIVE_MATCHES_TABLE)
                .select("sale_id_a")
                .eq("sale_id_a", sale_id_a)
                .eq("sale_id_b", sale_id_b)
                .limit(1)
                .execute()
            )
            return bool(result.data)
        except Exception as e:
            raise SupabaseError(f"Failed to check negative match: {e}")


async def get_negative_match_partners(sale_id: str) -> set[str]:
    """Ids of every sale confirmed as distinct from sale_id."""
    async with SupabaseClient() as client:
        try:
            result = (
                client.table(NEGATIVE_MATCHES_TABLE)
                .select("sale_id_a, sale_id_b")
                .or_(f"sale_id_a.eq.{sale_id},sale_id_b.eq.{sale_id}")
                .execute()
            )
            partners = set()
            for row in result.data or []:
                other = row["sale_id_b"] if row["sale_id_a"] == sale_id else row["sale_id_a"]
                partners.add(other)
            return partners
        except Exception as e:
            raise SupabaseError(f"Failed to get negative matches: {e}")


# Ingest runs table operations
async def create_ingest_run(run_data: dict) -> dict:
    """Create a new ingest run row."""
    async with SupabaseClient() as client:
        try:
            result = client.table(INGEST_RUNS_TABLE).insert(run_data).execute()
            if result.data and len(result.data) > 0:
                return result.data[0]
            raise SupabaseError("Failed to create ingest run: no data returned")
        except Exception as e:
            raise _storage_error("create ingest run", e)


async def update_ingest_run(run_id: str, updates: dict) -> dict:
    """Update an ingest run row."""
    async with SupabaseClient() as client:
        try:
            result = client.table(INGEST_RUNS_TABLE).update(updates).eq("id", run_id).execute()
            if result.data and len(result.data) > 0:
                return result.data[0]
            raise SupabaseError(f"Failed to update ingest run: {run_id}")
        except Exception as e:
            raise _storage_error("update ingest run", e)


async def list_ingest_runs(source: Optional[str] = None, limit: int = 5) -> list[dict]:
    """Most recent ingest runs, newest first."""
    async with SupabaseClient() as client:
        try:
            query = client.table(INGEST_RUNS_TABLE).select("*")
            if source:
                query = query.eq("source", source)
            result = query.order("started_at", desc=True).limit(limit).execute()
            return result.data if result.data else []
        except Exception as e:
            raise SupabaseError(f"Failed to list ingest runs: {e}")


# Idempotency keys table operations
async def get_idempotency_record(key: str) -> Optional[dict]:
    async with SupabaseClient() as client:
        try:
            result = client.table(IDEMPOTENCY_TABLE).select("*").eq("key", key).limit(1).execute()
            return result.data[0] if result.data else None
        except Exception as e:
            raise SupabaseError(f"Failed to get idempotency key: {e}")


async def insert_idempotency_record(record: dict) -> bool:
    """Insert a key; False when the key already exists (unique violation)."""
    async with SupabaseClient() as client:
        try:
            client.table(IDEMPOTENCY_TABLE).insert(record).execute()
            return True
        except Exception as e:
            if is_constraint_violation(e):
                return False
            raise SupabaseError(f"Failed to insert idempotency key: {e}")


async def renew_expired_idempotency_record(key: str, expires_at: float, now: float) -> bool:
    """Compare-and-set: take over a key only if its previous lease has expired."""
    async with SupabaseClient() as client:
        try:
            result = (
                client.table(IDEMPOTENCY_TABLE)
                .update({"expires_at": expires_at, "response": None})
                .eq("key", key)
                .lte("expires_at", now)
                .execute()
            )
            return bool(result.data)
        except Exception as e:
            raise SupabaseError(f"Failed to renew idempotency key: {e}")


async def set_idempotency_response(key: str, response: dict[str, Any]) -> None:
    async with SupabaseClient() as client:
        try:
            client.table(IDEMPOTENCY_TABLE).update({"response": response}).eq("key", key).execute()
        except Exception as e:
            raise SupabaseError(f"Failed to store idempotency response: {e}")


async def delete_expired_idempotency_records(now: float) -> None:
    async with SupabaseClient() as client:
        try:
            client.table(IDEMPOTENCY_TABLE).delete().lte("expires_at", now).execute()
        except Exception as e:
            raise SupabaseError(f"Failed to purge idempotency keys: {e}")


# Rate limit counters
async def increment_rate_limit(key: str, window_ms: int, now: float) -> dict:
    """
    Atomically increment a fixed-window counter.

    The increment_rate_limit database function resets the counter when the
    stored window has closed and returns {count, window_reset_at}.
    """
    async with SupabaseClient() as client:
        try:
            result = client.rpc("increment_rate_limit", {
                "p_key": key,
                "p_window_ms": window_ms,
                "p_now": now,
            }).execute()
            data = result.data
            if isinstance(data, list):
                data = data[0] if data else None
            if not data:
                raise SupabaseError("Failed to increment rate limit: no data returned")
            return data
        except Exception as e:
            raise _storage_error("increment rate limit", e)
