"""Idempotency keys for the ingest trigger, backed by memory or the idempotency_keys table."""

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Optional
from saleingest.models.guards import IdempotencyRecord, IdempotencyResult, IdempotencyStatus
from saleingest.services import supabase_client
from saleingest.utils.logging import get_structured_logger, mask_identifier

logger = get_structured_logger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
MIN_KEY_LENGTH = 6


class IdempotencyStore(ABC):
    """Backend contract shared by the process-local and Supabase stores."""

    @abstractmethod
    async def claim(self, key: str, expires_at: float, now: float) -> bool:
        """Atomically record the key unless a live record exists. True when claimed."""

    @abstractmethod
    async def get(self, key: str, now: float) -> Optional[IdempotencyRecord]:
        """The live (unexpired) record for a key, if any."""

    @abstractmethod
    async def set_response(self, key: str, response: dict[str, Any]) -> None:
        """Attach the completed outcome to a key."""

    @abstractmethod
    async def purge_expired(self, now: float) -> None:
        """Drop records whose TTL has passed."""


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local store for single-instance deployments and tests."""

    def __init__(self):
        self._records: dict[str, IdempotencyRecord] = {}
        self._lock = threading.Lock()

    async def claim(self, key: str, expires_at: float, now: float) -> bool:
        with self._lock:
            existing = self._records.get(key)
            if existing is not None and existing.expires_at > now:
                return False
            self._records[key] = IdempotencyRecord(key=key, expires_at=expires_at)
            return True

    async def get(self, key: str, now: float) -> Optional[IdempotencyRecord]:
        with self._lock:
            record = self._records.get(key)
            if record is None or record.expires_at <= now:
                return None
            return record.model_copy()

    async def set_response(self, key: str, response: dict[str, Any]) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is not None:
                self._records[key] = record.model_copy(update={"response": response})

    async def purge_expired(self, now: float) -> None:
        with self._lock:
            expired = [key for key, record in self._records.items() if record.expires_at <= now]
            for key in expired:
                del self._records[key]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class SupabaseIdempotencyStore(IdempotencyStore):
    """
    Shared store on the idempotency_keys table.

    A claim is an insert against the unique key; an expired row is taken over
    with a conditional update. Both are single statements, so two instances
    racing on the same key cannot both claim it.
    """

    async def claim(self, key: str, expires_at: float, now: float) -> bool:
        inserted = await supabase_client.insert_idempotency_record(
            {"key": key, "expires_at": expires_at, "response": None}
        )
        if inserted:
            return True
        return await supabase_client.renew_expired_idempotency_record(key, expires_at, now)

    async def get(self, key: str, now: float) -> Optional[IdempotencyRecord]:
        row = await supabase_client.get_idempotency_record(key)
        if not row:
            return None
        record = IdempotencyRecord.model_validate(row)
        if record.expires_at <= now:
            return None
        return record

    async def set_response(self, key: str, response: dict[str, Any]) -> None:
        await supabase_client.set_idempotency_response(key, response)

    async def purge_expired(self, now: float) -> None:
        await supabase_client.delete_expired_idempotency_records(now)


class IdempotencyGuard:
    """
    Short-circuits repeated requests carrying the same Idempotency-Key.

    Exactly-once under truly concurrent duplicates is only as strong as the
    store's claim; both bundled stores claim atomically.
    """

    def __init__(self, store: IdempotencyStore, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def check_and_set(self, key: Optional[str]) -> IdempotencyResult:
        """
        Claim a key for a new request.

        Returns:
            missing for an absent or too-short key, replay when a live record
            exists, accepted when the key was recorded for this request
        """
        if not key or len(key.strip()) < MIN_KEY_LENGTH:
            return IdempotencyResult(status=IdempotencyStatus.MISSING)

        key = key.strip()
        now = time.time()
        await self.store.purge_expired(now)

        if await self.store.claim(key, now + self.ttl_seconds, now):
            logger.debug("Idempotency key accepted", idempotency_key=mask_identifier(key))
            return IdempotencyResult(
                status=IdempotencyStatus.ACCEPTED,
                record=IdempotencyRecord(key=key, expires_at=now + self.ttl_seconds),
            )

        record = await self.store.get(key, now)
        logger.info("Idempotency key replayed", idempotency_key=mask_identifier(key))
        return IdempotencyResult(status=IdempotencyStatus.REPLAY, record=record)

    async def remember(self, key: str, response: dict[str, Any]) -> None:
        """Store the outcome so later replays can return it."""
        await self.store.set_response(key.strip(), response)


_memory_store = InMemoryIdempotencyStore()


def get_idempotency_store(backend: str) -> IdempotencyStore:
    if backend == "supabase":
        return SupabaseIdempotencyStore()
    return _memory_store


def create_idempotency_guard(settings) -> IdempotencyGuard:
    """Guard wired to the configured backend and TTL."""
    return IdempotencyGuard(
        get_idempotency_store(settings.idempotency_backend),
        ttl_seconds=settings.idempotency_ttl_seconds,
    )
