"""Tests for the CSV ingestion pipeline."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch
from uuid import UUID

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.models.enums import BatchStatus, DNCSource
from app.models.suppression_entry import SuppressionEntry
from app.models.upload_batch import UploadBatch
from app.services import ingestion_service, registry_store
from app.services.errors import (
    BatchAbandoned,
    FileTooLarge,
    StoreUnavailable,
    UnsupportedMediaType,
    ValidationFailed,
)
from app.services.ingestion_service import ingest, iter_phone_values
from app.services.registry_store import UpsertResult


async def _collect(stream, max_bytes: int = 1024 * 1024) -> list[tuple[int, str | None]]:
    return [item async for item in iter_phone_values(stream, max_bytes)]


class TestIterPhoneValues:
    async def test_header_named_column(self, fake_upload):
        rows = await _collect(fake_upload("name,Phone Number\nAlice,2025551234\nBob,2125550100\n"))
        assert rows == [(1, "2025551234"), (2, "2125550100")]

    async def test_no_header_uses_first_column(self, fake_upload):
        rows = await _collect(fake_upload("2025551234,Alice\n2125550100,Bob"))
        assert rows == [(1, "2025551234"), (2, "2125550100")]

    async def test_header_without_phone_name(self, fake_upload):
        rows = await _collect(fake_upload("contact\n2025551234\n"))
        assert rows == [(1, "2025551234")]

    async def test_blank_lines_and_crlf(self, fake_upload):
        rows = await _collect(fake_upload("phoneNumber\r\n2025551234\r\n\r\n2125550100\r\n"))
        assert rows == [(1, "2025551234"), (2, "2125550100")]

    async def test_bom_stripped(self, fake_upload):
        rows = await _collect(fake_upload("\ufeffphone\n2025551234\n".encode("utf-8")))
        assert rows == [(1, "2025551234")]

    async def test_quoted_cells(self, fake_upload):
        rows = await _collect(fake_upload('phone,name\n"(202) 555-1234","Doe, Jane"\n'))
        assert rows == [(1, "(202) 555-1234")]

    async def test_missing_cell(self, fake_upload):
        rows = await _collect(fake_upload("name,phone\nAlice\n"))
        assert rows == [(1, None)]

    async def test_lines_split_across_reads(self, fake_upload):
        body = "phone\n" + "\n".join(f"21255{i:05d}" for i in range(20000))
        rows = await _collect(fake_upload(body))
        assert len(rows) == 20000
        assert rows[-1] == (20000, "2125519999")

    async def test_size_enforced_while_streaming(self, fake_upload):
        body = "phone\n" + "2025551234\n" * 20000
        with pytest.raises(FileTooLarge):
            await _collect(fake_upload(body), max_bytes=100_000)

    async def test_not_utf8(self, fake_upload):
        with pytest.raises(UnsupportedMediaType):
            await _collect(fake_upload(b"phone\n\xff\xfe\x00garbage\n"))


class TestValidateUpload:
    def test_extension_accepted(self):
        ingestion_service.validate_upload("list.CSV", "application/octet-stream", 10)

    def test_mime_accepted(self):
        ingestion_service.validate_upload("list", "text/csv; charset=utf-8", 10)

    def test_other_file_rejected(self):
        with pytest.raises(UnsupportedMediaType):
            ingestion_service.validate_upload("list.xlsx", "application/octet-stream", 10)

    def test_size_ceiling(self):
        config = Settings(DNC_MAX_UPLOAD_BYTES=1000)
        with pytest.raises(FileTooLarge) as exc_info:
            ingestion_service.validate_upload("list.csv", "text/csv", 1001, config)
        assert exc_info.value.status_code == 413
        assert exc_info.value.code == "FILE_TOO_LARGE"

    def test_state_required_for_state_lists(self):
        with pytest.raises(ValidationFailed) as exc_info:
            ingestion_service.validate_upload_target(None, DNCSource.STATE, None)
        assert exc_info.value.details[0]["field"] == "state"

    def test_unknown_state(self):
        with pytest.raises(ValidationFailed):
            ingestion_service.validate_upload_target(None, DNCSource.STATE, "ZZ")

    def test_state_normalized(self):
        assert ingestion_service.validate_upload_target(None, DNCSource.STATE, " ny ") == "NY"

    def test_state_dropped_for_national(self):
        assert ingestion_service.validate_upload_target(None, DNCSource.NATIONAL, "NY") is None

    def test_manual_upload_requires_tenant(self):
        with pytest.raises(ValidationFailed):
            ingestion_service.validate_upload_target(None, DNCSource.MANUAL_UPLOAD, None)

    def test_internal_not_uploadable(self):
        with pytest.raises(ValidationFailed):
            ingestion_service.validate_upload_target("tenant-a", DNCSource.INTERNAL, None)


class TestIngest:
    async def test_three_row_scenario(self, db: AsyncSession, fake_upload):
        body = "phone\n+12025551234\n555-BAD\n+12025551234\n"
        batch = await ingest(
            db, None, fake_upload(body), "national.csv", DNCSource.NATIONAL,
        )

        assert batch.status == BatchStatus.COMPLETED.value
        assert batch.total_records == 3
        assert batch.successful_imports == 1
        assert batch.failed_imports == 2
        assert batch.duplicate_imports == 1
        assert len(batch.errors) == 1
        assert batch.errors[0]["row"] == 2
        assert batch.errors[0]["raw_value"] == "555-BAD"
        assert batch.processing_time_ms is not None

        stored = await db.scalar(select(func.count()).select_from(SuppressionEntry))
        assert stored == 1

    async def test_reupload_counts_duplicates(self, db: AsyncSession, fake_upload):
        body = "2025551234\n2125550100\n"
        await ingest(db, None, fake_upload(body), "a.csv", DNCSource.NATIONAL)
        second = await ingest(db, None, fake_upload(body), "b.csv", DNCSource.NATIONAL)

        assert second.successful_imports == 0
        assert second.duplicate_imports == 2
        assert second.failed_imports == 2
        assert second.errors == []

    async def test_entries_carry_retention_window(self, db: AsyncSession, fake_upload):
        config = Settings(DNC_RETENTION_DAYS=31)
        batch = await ingest(
            db, None, fake_upload("2025551234\n"), "n.csv", DNCSource.NATIONAL, config=config,
        )
        entry = (await db.execute(select(SuppressionEntry))).scalar_one()
        assert entry.upload_batch_id == batch.id
        assert (entry.expiry_date - entry.added_date).days == 31

    async def test_state_upload(self, db: AsyncSession, fake_upload):
        await ingest(db, None, fake_upload("2125550100\n"), "ny.csv", DNCSource.STATE, state="ny")
        entry = (await db.execute(select(SuppressionEntry))).scalar_one()
        assert entry.source == "STATE"
        assert entry.state == "NY"

    async def test_manual_upload_scoped_to_tenant(self, db: AsyncSession, fake_upload):
        batch = await ingest(
            db, "tenant-a", fake_upload("2025551234\n"), "mine.csv", DNCSource.MANUAL_UPLOAD,
        )
        entry = (await db.execute(select(SuppressionEntry))).scalar_one()
        assert entry.tenant_scope == "tenant-a"
        assert batch.tenant_scope == "tenant-a"

    async def test_error_list_capped_but_all_counted(self, db: AsyncSession, fake_upload):
        config = Settings(DNC_UPLOAD_ERROR_LIMIT=5)
        body = "phone\n" + "bad\n" * 12
        batch = await ingest(
            db, None, fake_upload(body), "bad.csv", DNCSource.NATIONAL, config=config,
        )
        assert batch.failed_imports == 12
        assert len(batch.errors) == 5

    async def test_rejected_before_batch_opened(self, db: AsyncSession, fake_upload):
        with pytest.raises(UnsupportedMediaType):
            await ingest(
                db, None, fake_upload("x"), "list.pdf", DNCSource.NATIONAL,
                content_type="application/pdf",
            )
        assert await db.scalar(select(func.count()).select_from(UploadBatch)) == 0

    async def test_validation_before_batch_opened(self, db: AsyncSession, fake_upload):
        with pytest.raises(ValidationFailed):
            await ingest(db, None, fake_upload("2025551234\n"), "m.csv", DNCSource.MANUAL_UPLOAD)
        assert await db.scalar(select(func.count()).select_from(UploadBatch)) == 0

    async def test_oversized_stream_fails_batch(self, db: AsyncSession, fake_upload):
        config = Settings(DNC_MAX_UPLOAD_BYTES=100_000)
        body = "phone\n" + "2025551234\n" * 20000

        with pytest.raises(FileTooLarge) as exc_info:
            await ingest(db, None, fake_upload(body), "big.csv", DNCSource.NATIONAL, config=config)

        batch = await db.get(UploadBatch, UUID(exc_info.value.details["batch_id"]))
        assert batch.status == BatchStatus.FAILED.value

    async def test_disconnect_keeps_validated_rows(self, db: AsyncSession, fake_upload):
        # Two 64 KiB reads succeed, the third raises
        lines = [f"2125{i:06d}" for i in range(200000, 215000)]
        body = "phone\n" + "\n".join(lines)
        stream = fake_upload(body, fail_after=2)

        with pytest.raises(ConnectionResetError):
            await ingest(db, None, stream, "partial.csv", DNCSource.NATIONAL)

        batch = (await db.execute(select(UploadBatch))).scalar_one()
        assert batch.status == BatchStatus.FAILED.value
        assert 0 < batch.successful_imports < len(lines)
        assert batch.total_records == batch.successful_imports
        assert batch.errors[-1]["reason"] == "Processing failed: ConnectionResetError"

        stored = await db.scalar(select(func.count()).select_from(SuppressionEntry))
        assert stored == batch.successful_imports

    async def test_cancellation_finalizes_batch(self, db: AsyncSession, fake_upload):
        stream = fake_upload("2025551234\n2125550100\n")
        stream.read = AsyncMock(side_effect=[b"2025551234\n", asyncio.CancelledError()])

        with pytest.raises(asyncio.CancelledError):
            await ingest(db, None, stream, "cancelled.csv", DNCSource.NATIONAL)

        batch = (await db.execute(select(UploadBatch))).scalar_one()
        assert batch.status == BatchStatus.FAILED.value
        assert batch.successful_imports == 1

    async def test_store_failure_fails_batch(self, db: AsyncSession, fake_upload):
        failed_write = UpsertResult(
            inserted=0,
            duplicates=0,
            errors=[{"chunk": 1, "rows": 2, "reason": "Store write failed: OperationalError"}],
        )
        with patch(
            "app.services.registry_store.upsert_suppression_batch",
            AsyncMock(return_value=failed_write),
        ):
            with pytest.raises(StoreUnavailable) as exc_info:
                await ingest(
                    db, None, fake_upload("2025551234\n2125550100\n"), "n.csv", DNCSource.NATIONAL,
                )

        details = exc_info.value.details
        assert details["failed_imports"] == 2
        batch = (await db.execute(select(UploadBatch))).scalar_one()
        assert batch.status == BatchStatus.FAILED.value
        assert batch.errors[0]["reason"] == "Store write failed: OperationalError"

    async def test_swept_mid_run_records_counts(self, db: AsyncSession, fake_upload):
        write = registry_store.upsert_suppression_batch

        async def sweep_then_write(session, entries, **kwargs):
            await registry_store.fail_stale_batches(session, timedelta(0))
            await session.commit()
            return await write(session, entries, **kwargs)

        with patch(
            "app.services.registry_store.upsert_suppression_batch",
            AsyncMock(side_effect=sweep_then_write),
        ):
            with pytest.raises(BatchAbandoned) as exc_info:
                await ingest(
                    db, None, fake_upload("2025551234\n2125550100\n"), "n.csv", DNCSource.NATIONAL,
                )

        assert exc_info.value.details["successful_imports"] == 2
        batch = (await db.execute(select(UploadBatch))).scalar_one()
        assert batch.status == BatchStatus.FAILED.value
        assert batch.total_records == 2
        assert batch.successful_imports == 2
        assert batch.processing_time_ms is not None
        assert batch.errors[0]["reason"] == "Processing abandoned before completion"

        stored = await db.scalar(select(func.count()).select_from(SuppressionEntry))
        assert stored == 2
