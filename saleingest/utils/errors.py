"""Error handling utilities."""


class SaleIngestError(Exception):
    """Base exception for the sale ingestion backend."""
    pass


class RequestValidationError(SaleIngestError):
    """Request body is missing required fields or is malformed."""
    pass


class FetchError(SaleIngestError):
    """Upstream listing site could not be fetched."""
    pass


class IngestTimeoutError(SaleIngestError):
    """Ingest run exceeded its deadline."""
    pass


class SupabaseError(SaleIngestError):
    """Supabase operation error."""
    pass


class SaleRejectedError(SupabaseError):
    """Storage refused a single record (constraint violation)."""
    pass
