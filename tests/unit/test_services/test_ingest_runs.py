"""Tests for ingest run bookkeeping."""

import pytest
from unittest.mock import AsyncMock, patch
from saleingest.models.ingest_run import RunStatus
from saleingest.services.ingest_runs import IngestRunTracker
from saleingest.utils.errors import SupabaseError
from tests.utils.assertions import assert_finalized_run

CREATE = "saleingest.services.supabase_client.create_ingest_run"
UPDATE = "saleingest.services.supabase_client.update_ingest_run"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_creates_running_row():
    tracker = IngestRunTracker()

    with patch(CREATE, new_callable=AsyncMock, return_value={}) as mock_create:
        run_id = await tracker.start("craigslist", dry_run=True)

    row = mock_create.call_args[0][0]
    assert row["id"] == run_id
    assert row["status"] == "running"
    assert row["dry_run"] is True
    assert row["finished_at"] is None
    assert tracker.run_id == run_id
    assert tracker.is_finished is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_finish_ok_persists_counters():
    """Test final counters and details are written with the terminal status."""
    tracker = IngestRunTracker()

    with patch(CREATE, new_callable=AsyncMock, return_value={}), \
         patch(UPDATE, new_callable=AsyncMock, return_value={}) as mock_update:
        run_id = await tracker.start("craigslist")
        tracker.add_counts(fetched=5)
        tracker.add_counts(new=2)
        tracker.add_counts(new=1, updated=1)
        tracker.update_details(via="snapshot")
        run = await tracker.finish(RunStatus.OK)

    assert run.status == RunStatus.OK
    updated_id, updates = mock_update.call_args[0]
    assert updated_id == run_id
    assert_finalized_run(updates, "ok")
    assert updates["fetched_count"] == 5
    assert updates["new_count"] == 3
    assert updates["updated_count"] == 1
    assert updates["details"] == {"via": "snapshot"}
    assert updates["last_error"] is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_finish_error_requires_message():
    tracker = IngestRunTracker()

    with patch(CREATE, new_callable=AsyncMock, return_value={}), \
         patch(UPDATE, new_callable=AsyncMock, return_value={}) as mock_update:
        await tracker.start("craigslist")
        await tracker.finish(RunStatus.ERROR)

    assert_finalized_run(mock_update.call_args[0][1], "error")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_finish_only_once():
    """Test the terminal transition happens exactly once."""
    tracker = IngestRunTracker()

    with patch(CREATE, new_callable=AsyncMock, return_value={}), \
         patch(UPDATE, new_callable=AsyncMock, return_value={}) as mock_update:
        await tracker.start("craigslist")
        await tracker.finish(RunStatus.OK)

        with pytest.raises(RuntimeError):
            await tracker.finish(RunStatus.ERROR, last_error="late failure")

        with pytest.raises(RuntimeError):
            tracker.add_counts(new=1)

    assert mock_update.call_count == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_finish_write_failure_still_terminal():
    """Test a failed final write does not allow a second finish."""
    tracker = IngestRunTracker()

    with patch(CREATE, new_callable=AsyncMock, return_value={}), \
         patch(UPDATE, new_callable=AsyncMock, side_effect=SupabaseError("down")):
        await tracker.start("craigslist")
        with pytest.raises(SupabaseError):
            await tracker.finish(RunStatus.OK)

    assert tracker.is_finished is True
    assert tracker.run.finished_at is not None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_finish_rejects_running_status():
    tracker = IngestRunTracker()

    with patch(CREATE, new_callable=AsyncMock, return_value={}):
        await tracker.start("craigslist")

    with pytest.raises(ValueError):
        await tracker.finish(RunStatus.RUNNING)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_last_error_is_truncated():
    tracker = IngestRunTracker()

    with patch(CREATE, new_callable=AsyncMock, return_value={}), \
         patch(UPDATE, new_callable=AsyncMock, return_value={}) as mock_update:
        await tracker.start("craigslist")
        await tracker.finish(RunStatus.ERROR, last_error="x" * 2000)

    assert len(mock_update.call_args[0][1]["last_error"]) <= 503
