"""CSV ingestion pipeline for DNC registry uploads."""

import asyncio
import codecs
import csv
import logging
import time
from collections.abc import AsyncIterator
from datetime import timedelta
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.models.enums import BatchStatus, DNCSource
from app.models.upload_batch import UploadBatch
from app.services import registry_store
from app.services.errors import (
    BatchAbandoned,
    DNCError,
    FileTooLarge,
    InvalidFormat,
    StoreUnavailable,
    UnsupportedMediaType,
    ValidationFailed,
)
from app.utils.area_codes import KNOWN_STATES
from app.utils.phone_validator import normalize_phone

logger = logging.getLogger(__name__)

CSV_CONTENT_TYPES = frozenset({"text/csv", "application/csv", "application/vnd.ms-excel"})

# Header cells recognized as the phone column (compared lower-case, without separators)
PHONE_COLUMN_NAMES = frozenset({
    "phonenumber",
    "phone",
    "number",
    "telephone",
    "tel",
    "phoneno",
})

READ_CHUNK_BYTES = 64 * 1024
_RAW_VALUE_MAX = 64


class AsyncReadable(Protocol):
    """Anything with an async read(size), e.g. starlette's UploadFile."""

    async def read(self, size: int = -1) -> bytes: ...


def validate_upload(
    filename: str | None,
    content_type: str | None,
    size: int | None,
    config: Settings | None = None,
) -> None:
    """
    Reject uploads that are not CSV or exceed the size ceiling.

    Raises:
        UnsupportedMediaType: If neither the extension nor the MIME type is CSV
        FileTooLarge: If the declared size is over DNC_MAX_UPLOAD_BYTES
    """
    config = config or settings
    media_type = (content_type or "").split(";")[0].strip().lower()
    is_csv_name = bool(filename) and filename.lower().endswith(".csv")

    if not is_csv_name and media_type not in CSV_CONTENT_TYPES:
        raise UnsupportedMediaType(
            "Only CSV files are allowed",
            details={"filename": filename, "content_type": content_type},
        )
    if size is not None and size > config.DNC_MAX_UPLOAD_BYTES:
        raise FileTooLarge(
            f"File size must not exceed {config.DNC_MAX_UPLOAD_BYTES} bytes",
            details={"size": size, "limit": config.DNC_MAX_UPLOAD_BYTES},
        )


def validate_upload_target(
    tenant_scope: str | None,
    source: DNCSource,
    state: str | None,
) -> str | None:
    """
    Check the source/state/scope combination of an upload.

    Returns:
        The normalized state code (only kept for STATE uploads)

    Raises:
        ValidationFailed: With field-qualified messages
    """
    problems: list[dict[str, str]] = []

    if source is DNCSource.INTERNAL:
        problems.append({"field": "source", "message": "INTERNAL entries cannot be uploaded"})

    state_code = (state or "").strip().upper() or None
    if source is DNCSource.STATE:
        if state_code is None:
            problems.append({"field": "state", "message": "State is required for STATE uploads"})
        elif state_code not in KNOWN_STATES:
            problems.append({"field": "state", "message": f"Unknown state code '{state}'"})
    else:
        state_code = None

    if source is DNCSource.MANUAL_UPLOAD and tenant_scope is None:
        problems.append({
            "field": "tenant_scope",
            "message": "MANUAL_UPLOAD lists are tenant-private; a tenant is required",
        })

    if problems:
        raise ValidationFailed("Invalid upload parameters", details=problems)
    return state_code


async def iter_lines(stream: AsyncReadable, max_bytes: int) -> AsyncIterator[str]:
    """
    Yield decoded text lines from an async byte stream without buffering the file.

    Raises:
        FileTooLarge: Once more than max_bytes have been read
        UnsupportedMediaType: If the content is not UTF-8 text
    """
    decoder = codecs.getincrementaldecoder("utf-8-sig")()
    pending = ""
    consumed = 0

    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        consumed += len(chunk)
        if consumed > max_bytes:
            raise FileTooLarge(
                f"File size must not exceed {max_bytes} bytes",
                details={"limit": max_bytes},
            )
        try:
            pending += decoder.decode(chunk)
        except UnicodeDecodeError as e:
            raise UnsupportedMediaType("File is not UTF-8 encoded text") from e

        *lines, pending = pending.split("\n")
        for line in lines:
            yield line.rstrip("\r")

    try:
        pending += decoder.decode(b"", final=True)
    except UnicodeDecodeError as e:
        raise UnsupportedMediaType("File is not UTF-8 encoded text") from e
    if pending:
        yield pending.rstrip("\r")


def _is_header(cells: list[str]) -> bool:
    """A first row is a header if it names a phone column or holds no digits."""
    if any(_column_key(cell) in PHONE_COLUMN_NAMES for cell in cells):
        return True
    return not any(ch.isdigit() for cell in cells for ch in cell)


def _column_key(cell: str) -> str:
    return "".join(ch for ch in cell.lower() if ch.isalnum())


async def iter_phone_values(
    stream: AsyncReadable,
    max_bytes: int,
) -> AsyncIterator[tuple[int, str | None]]:
    """
    Yield (row_number, phone_cell) for every data row of a CSV stream.

    Blank lines are skipped. Row numbers count data rows from 1. The phone
    cell is None when the row has no value in the phone column.
    """
    column = 0
    first = True
    row_number = 0

    async for line in iter_lines(stream, max_bytes):
        if not line.strip():
            continue
        cells = next(csv.reader([line]))

        if first:
            first = False
            if _is_header(cells):
                for index, cell in enumerate(cells):
                    if _column_key(cell) in PHONE_COLUMN_NAMES:
                        column = index
                        break
                continue

        row_number += 1
        value = cells[column].strip() if column < len(cells) else ""
        yield row_number, value or None


async def ingest(
    db: AsyncSession,
    tenant_scope: str | None,
    stream: AsyncReadable,
    filename: str,
    source: DNCSource,
    state: str | None = None,
    uploaded_by: str | None = None,
    content_type: str | None = None,
    size: int | None = None,
    config: Settings | None = None,
) -> UploadBatch:
    """
    Stream a DNC CSV into the registry and record the run as an upload batch.

    Rows are validated one at a time; valid numbers are staged and written
    in one bulk upsert after the stream ends. Duplicates count as failed
    imports without being errors. Any failure after the batch is opened
    finalizes it as FAILED with the counts reached so far, writing the rows
    already validated, and is then re-raised.

    Args:
        db: Database session
        tenant_scope: Tenant partition key, None for the shared global list
        stream: Async byte stream of the CSV file
        filename: Original file name
        source: NATIONAL, STATE or MANUAL_UPLOAD
        state: Two-letter state code (STATE uploads)
        uploaded_by: Operator performing the upload
        content_type: Declared MIME type
        size: Declared size in bytes, when known
        config: Settings override

    Returns:
        The finalized upload batch

    Raises:
        UnsupportedMediaType: Not a CSV upload
        FileTooLarge: Over the configured size ceiling
        ValidationFailed: Bad source/state/scope combination
        StoreUnavailable: The registry store failed during the run
        BatchAbandoned: The stale-batch sweep finalized the batch mid-run
    """
    config = config or settings
    validate_upload(filename, content_type, size, config)
    state_code = validate_upload_target(tenant_scope, source, state)

    batch = await registry_store.create_batch(
        db,
        tenant_scope=tenant_scope,
        filename=filename,
        source=source.value,
        state=state_code,
        uploaded_by=uploaded_by,
        file_size_bytes=size,
    )
    batch_id = batch.id
    logger.info(
        f"Upload batch {batch_id} opened for {filename} (source: {source.value})",
        extra={"batch_id": str(batch_id), "tenant_scope": tenant_scope, "source": source.value},
    )

    started = time.monotonic()
    now = registry_store.utcnow()
    expiry = now + timedelta(days=config.DNC_RETENTION_DAYS)

    total = 0
    invalid = 0
    errors: list[dict[str, Any]] = []
    staged: list[dict[str, Any]] = []
    failure: BaseException | None = None

    def record_error(row: int, raw_value: str | None, reason: str) -> None:
        if len(errors) < config.DNC_UPLOAD_ERROR_LIMIT:
            errors.append({
                "row": row,
                "raw_value": (raw_value or "")[:_RAW_VALUE_MAX],
                "reason": reason,
            })

    try:
        async for row_number, raw_value in iter_phone_values(stream, config.DNC_MAX_UPLOAD_BYTES):
            total += 1
            if raw_value is None:
                invalid += 1
                record_error(row_number, raw_value, "No phone number found in row")
                continue
            try:
                number = normalize_phone(raw_value)
            except InvalidFormat as e:
                invalid += 1
                record_error(row_number, raw_value, e.message)
                continue
            staged.append({
                "phone_number": number,
                "source": source.value,
                "state": state_code,
                "tenant_scope": tenant_scope,
                "upload_batch_id": batch_id,
                "added_date": now,
                "expiry_date": expiry,
            })
    except (Exception, asyncio.CancelledError) as e:
        failure = e
        logger.error(
            f"Upload batch {batch_id} interrupted after {total} rows: {e!r}",
            extra={"batch_id": str(batch_id), "event": "upload_interrupted", "count": total},
        )

    inserted = 0
    duplicates = 0
    unwritten = 0
    if staged:
        try:
            result = await registry_store.upsert_suppression_batch(
                db, staged, commit=True, config=config,
            )
            inserted = result.inserted
            duplicates = result.duplicates
            unwritten = len(staged) - inserted - duplicates
            for store_error in result.errors:
                record_error(0, "", store_error["reason"])
            if result.errors and failure is None:
                failure = StoreUnavailable(
                    "Registry store failed while writing the upload",
                    details={"batch_id": str(batch_id)},
                )
        except (Exception, asyncio.CancelledError) as e:
            unwritten = len(staged)
            record_error(0, "", f"Store write failed: {type(e).__name__}")
            failure = failure or e

    if failure is not None and not isinstance(failure, DNCError | asyncio.CancelledError):
        record_error(0, "", f"Processing failed: {type(failure).__name__}")

    batch = await registry_store.finalize_batch(
        db,
        batch,
        status=BatchStatus.FAILED if failure is not None else BatchStatus.COMPLETED,
        total_records=total,
        successful_imports=inserted,
        failed_imports=invalid + duplicates + unwritten,
        duplicate_imports=duplicates,
        errors=errors,
        processing_time_ms=int((time.monotonic() - started) * 1000),
    )

    if failure is None and batch.status == BatchStatus.FAILED.value:
        failure = BatchAbandoned(
            "Upload batch was marked FAILED before processing finished; counts were recorded",
        )

    if failure is not None:
        if isinstance(failure, DNCError):
            failure.details = {
                **(failure.details if isinstance(failure.details, dict) else {}),
                "batch_id": str(batch.id),
                "total_records": batch.total_records,
                "successful_imports": batch.successful_imports,
                "failed_imports": batch.failed_imports,
            }
        raise failure

    return batch
