"""Registry store: persistence for suppression entries, opt-outs and upload batches.

All reads filter logically expired suppression entries, so lookups stay
correct between physical sweeps. Persistence failures other than uniqueness
violations surface as StoreUnavailable.
"""

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, func, insert, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.models.enums import BatchStatus, DNCSource, RequestMethod
from app.models.opt_out import PermanentOptOut
from app.models.suppression_entry import SuppressionEntry
from app.models.upload_batch import UploadBatch
from app.services.errors import DuplicateEntry, NotFound, StoreUnavailable
from app.utils.phone_masking import mask_phone

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


@dataclass
class UpsertResult:
    """Outcome of a bulk suppression upsert."""

    inserted: int = 0
    duplicates: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)


@asynccontextmanager
async def store_errors(operation: str) -> AsyncIterator[None]:
    """Translate backend failures into StoreUnavailable."""
    try:
        yield
    except IntegrityError:
        raise
    except (SQLAlchemyError, OSError) as e:
        logger.error(
            f"Registry store failure during {operation}: {e}",
            extra={"event": "store_unavailable", "error_code": StoreUnavailable.code},
        )
        raise StoreUnavailable(f"Registry store unavailable during {operation}") from e


def _scope_filter(tenant_scope: str | None):
    """Global entries plus, when scoped, the tenant's own entries."""
    if tenant_scope is None:
        return SuppressionEntry.tenant_scope.is_(None)
    return or_(
        SuppressionEntry.tenant_scope.is_(None),
        SuppressionEntry.tenant_scope == tenant_scope,
    )


def _exact_scope(tenant_scope: str | None):
    if tenant_scope is None:
        return SuppressionEntry.tenant_scope.is_(None)
    return SuppressionEntry.tenant_scope == tenant_scope


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _conflict_ignoring_insert(db: AsyncSession):
    """INSERT that skips rows violating a unique index, where the backend supports it."""
    dialect = db.get_bind().dialect.name
    table = SuppressionEntry.__table__
    if dialect == "postgresql":
        return postgresql.insert(table).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite.insert(table).on_conflict_do_nothing()
    return insert(table)


# --- Suppression entries -------------------------------------------------


async def upsert_suppression_batch(
    db: AsyncSession,
    entries: Sequence[dict[str, Any]],
    commit: bool = False,
    config: Settings | None = None,
) -> UpsertResult:
    """
    Insert suppression entries in bulk, counting duplicates instead of failing.

    An entry is a duplicate when another entry in the same call, or an
    unexpired stored entry, has the same (phone_number, tenant_scope, source).
    A stored entry that has already lapsed is replaced by the new one.

    Args:
        db: Database session
        entries: Dicts with phone_number, source, state, tenant_scope,
            upload_batch_id, added_date, expiry_date
        commit: Commit after each chunk so earlier chunks survive a later failure
        config: Settings override

    Returns:
        UpsertResult with inserted and duplicate counts. With commit=True a
        failed chunk stops the write and is reported in errors.

    Raises:
        StoreUnavailable: If a chunk fails and commit is False
    """
    config = config or settings
    result = UpsertResult()
    now = utcnow()

    # Collapse duplicates inside the submitted batch
    staged: dict[tuple[str, str, str], dict[str, Any]] = {}
    for entry in entries:
        key = (entry["phone_number"], entry.get("tenant_scope") or "", entry["source"])
        if key in staged:
            result.duplicates += 1
            continue
        staged[key] = entry

    groups: dict[tuple[str | None, str], list[dict[str, Any]]] = {}
    for entry in staged.values():
        groups.setdefault((entry.get("tenant_scope"), entry["source"]), []).append(entry)

    chunk_index = 0
    for (tenant_scope, source), group in groups.items():
        for chunk in _chunks(group, config.DNC_BULK_WRITE_SIZE):
            chunk_index += 1
            try:
                inserted = await _write_chunk(db, tenant_scope, source, chunk, now)
                if commit:
                    await db.commit()
            except (SQLAlchemyError, OSError) as e:
                if not commit:
                    raise StoreUnavailable("Registry store unavailable during bulk write") from e
                await db.rollback()
                logger.error(
                    f"Bulk suppression write failed on chunk {chunk_index}: {e}",
                    extra={"event": "bulk_write_failed", "source": source},
                )
                result.errors.append({
                    "chunk": chunk_index,
                    "rows": len(chunk),
                    "reason": f"Store write failed: {type(e).__name__}",
                })
                return result

            result.inserted += inserted
            result.duplicates += len(chunk) - inserted

    return result


async def _write_chunk(
    db: AsyncSession,
    tenant_scope: str | None,
    source: str,
    chunk: Sequence[dict[str, Any]],
    now: datetime,
) -> int:
    """Write one chunk of same-scope, same-source rows; return rows inserted."""
    numbers = [row["phone_number"] for row in chunk]

    existing = await db.execute(
        select(SuppressionEntry.id, SuppressionEntry.phone_number, SuppressionEntry.expiry_date)
        .where(
            SuppressionEntry.source == source,
            _exact_scope(tenant_scope),
            SuppressionEntry.phone_number.in_(numbers),
        )
    )
    active_numbers: set[str] = set()
    lapsed_ids: list[UUID] = []
    for row in existing.all():
        if _as_utc(row.expiry_date) < now:
            lapsed_ids.append(row.id)
        else:
            active_numbers.add(row.phone_number)

    if lapsed_ids:
        await db.execute(
            delete(SuppressionEntry)
            .where(SuppressionEntry.id.in_(lapsed_ids))
            .execution_options(synchronize_session=False)
        )

    rows = [
        {
            "id": uuid4(),
            "phone_number": row["phone_number"],
            "source": source,
            "state": row.get("state"),
            "tenant_scope": tenant_scope,
            "upload_batch_id": row.get("upload_batch_id"),
            "added_date": row.get("added_date") or now,
            "expiry_date": row["expiry_date"],
        }
        for row in chunk
        if row["phone_number"] not in active_numbers
    ]
    if not rows:
        return 0

    # Concurrent writers may have inserted the same keys since the check above
    stmt = _conflict_ignoring_insert(db).returning(SuppressionEntry.__table__.c.id)
    inserted = await db.execute(stmt, rows)
    return len(inserted.all())


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; they were written as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def find_suppression(
    db: AsyncSession,
    tenant_scope: str | None,
    phone_number: str,
    now: datetime | None = None,
) -> list[SuppressionEntry]:
    """
    Find unexpired suppression entries for a number visible to a tenant.

    Args:
        db: Database session
        tenant_scope: Tenant partition key, None for global-only
        phone_number: Normalized E.164 number
        now: Reference time for the expiry filter

    Returns:
        Matching entries (global and tenant-private)
    """
    found = await find_suppressions_for_numbers(db, tenant_scope, [phone_number], now)
    return found.get(phone_number, [])


async def find_suppressions_for_numbers(
    db: AsyncSession,
    tenant_scope: str | None,
    phone_numbers: Sequence[str],
    now: datetime | None = None,
) -> dict[str, list[SuppressionEntry]]:
    """Set-based variant of find_suppression keyed by phone number."""
    if not phone_numbers:
        return {}
    now = now or utcnow()

    async with store_errors("suppression lookup"):
        result = await db.execute(
            select(SuppressionEntry).where(
                SuppressionEntry.phone_number.in_(list(phone_numbers)),
                SuppressionEntry.expiry_date >= now,
                _scope_filter(tenant_scope),
            )
        )
        entries = result.scalars().all()

    by_number: dict[str, list[SuppressionEntry]] = {}
    for entry in entries:
        by_number.setdefault(entry.phone_number, []).append(entry)
    return by_number


async def delete_expired(db: AsyncSession, before: datetime) -> int:
    """
    Physically delete suppression entries whose expiry is before a timestamp.

    Args:
        db: Database session
        before: Entries with expiry_date < before are removed

    Returns:
        Number of rows deleted
    """
    async with store_errors("expired entry deletion"):
        result = await db.execute(
            delete(SuppressionEntry)
            .where(SuppressionEntry.expiry_date < before)
            .execution_options(synchronize_session=False)
        )
        await db.flush()
    return result.rowcount or 0


async def delete_batch_entries(db: AsyncSession, batch_id: UUID) -> int:
    """Delete the suppression entries an upload batch created."""
    async with store_errors("batch entry deletion"):
        result = await db.execute(
            delete(SuppressionEntry)
            .where(SuppressionEntry.upload_batch_id == batch_id)
            .execution_options(synchronize_session=False)
        )
        await db.flush()
    deleted = result.rowcount or 0
    logger.info(
        f"Deleted {deleted} suppression entries from batch {batch_id}",
        extra={"batch_id": str(batch_id), "deleted": deleted},
    )
    return deleted


async def count_by_source(
    db: AsyncSession,
    tenant_scope: str | None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Count active registry records per source for a tenant's view.

    Args:
        db: Database session
        tenant_scope: Tenant partition key, None for global-only
        now: Reference time for the expiry filter

    Returns:
        Dictionary with total, by_source, expired and last_upload
    """
    now = now or utcnow()

    async with store_errors("stats"):
        rows = await db.execute(
            select(SuppressionEntry.source, func.count())
            .where(SuppressionEntry.expiry_date >= now, _scope_filter(tenant_scope))
            .group_by(SuppressionEntry.source)
        )
        by_source = {source.value: 0 for source in DNCSource}
        for source, count in rows.all():
            by_source[source] = count

        if tenant_scope is not None:
            by_source[DNCSource.INTERNAL.value] = await db.scalar(
                select(func.count()).select_from(PermanentOptOut).where(
                    PermanentOptOut.tenant_scope == tenant_scope,
                    PermanentOptOut.removed_date.is_(None),
                )
            ) or 0

        expired = await db.scalar(
            select(func.count()).select_from(SuppressionEntry).where(
                SuppressionEntry.expiry_date < now,
                _scope_filter(tenant_scope),
            )
        ) or 0

        latest_query = select(UploadBatch).order_by(UploadBatch.upload_date.desc()).limit(1)
        if tenant_scope is None:
            latest_query = latest_query.where(UploadBatch.tenant_scope.is_(None))
        else:
            latest_query = latest_query.where(UploadBatch.tenant_scope == tenant_scope)
        latest = (await db.execute(latest_query)).scalar_one_or_none()

    return {
        "total": sum(by_source.values()),
        "by_source": by_source,
        "expired": expired,
        "last_upload": (
            {
                "date": latest.upload_date,
                "filename": latest.filename,
                "records": latest.successful_imports,
            }
            if latest
            else None
        ),
    }


# --- Permanent opt-outs --------------------------------------------------


async def find_opt_out(
    db: AsyncSession,
    tenant_scope: str,
    phone_number: str,
    include_removed: bool = True,
) -> PermanentOptOut | None:
    """
    Find a tenant's opt-out record for a number.

    Args:
        db: Database session
        tenant_scope: Tenant partition key
        phone_number: Normalized E.164 number
        include_removed: Also return soft-removed records

    Returns:
        The record, or None
    """
    query = select(PermanentOptOut).where(
        PermanentOptOut.tenant_scope == tenant_scope,
        PermanentOptOut.phone_number == phone_number,
    )
    if not include_removed:
        query = query.where(PermanentOptOut.removed_date.is_(None))

    async with store_errors("opt-out lookup"):
        result = await db.execute(query)
        return result.scalar_one_or_none()


async def find_active_opt_outs_for_numbers(
    db: AsyncSession,
    tenant_scope: str,
    phone_numbers: Sequence[str],
) -> dict[str, PermanentOptOut]:
    """Active opt-outs for many numbers at once, keyed by phone number."""
    if not phone_numbers:
        return {}

    async with store_errors("opt-out lookup"):
        result = await db.execute(
            select(PermanentOptOut).where(
                PermanentOptOut.tenant_scope == tenant_scope,
                PermanentOptOut.phone_number.in_(list(phone_numbers)),
                PermanentOptOut.removed_date.is_(None),
            )
        )
        return {record.phone_number: record for record in result.scalars().all()}


async def add_opt_out(
    db: AsyncSession,
    tenant_scope: str,
    phone_number: str,
    reason: str,
    request_method: RequestMethod | str,
    contact_ref: str | None = None,
    processed_by: str | None = None,
    notes: str | None = None,
) -> PermanentOptOut:
    """
    Record a permanent opt-out for a tenant.

    A previously removed record for the same number is re-activated rather
    than duplicated.

    Args:
        db: Database session
        tenant_scope: Tenant partition key
        phone_number: Normalized E.164 number
        reason: Why the contact opted out
        request_method: Channel the request came through
        contact_ref: Optional reference to the tenant's contact record
        processed_by: Optional operator who processed the request
        notes: Optional free-text notes

    Returns:
        The active opt-out record

    Raises:
        DuplicateEntry: If an active opt-out already exists
    """
    method = RequestMethod(request_method).value
    existing = await find_opt_out(db, tenant_scope, phone_number)

    if existing and existing.is_active:
        logger.info(
            f"Opt-out already active for {mask_phone(phone_number)}",
            extra={"tenant_scope": tenant_scope, "phone": mask_phone(phone_number)},
        )
        raise DuplicateEntry(
            "Phone number already on internal DNC list",
            details={"phone_number": phone_number},
        )

    if existing:
        existing.reason = reason
        existing.request_method = method
        existing.request_date = utcnow()
        existing.contact_ref = contact_ref
        existing.processed_by = processed_by
        existing.notes = notes
        existing.removed_date = None
        existing.removed_by = None
        existing.removed_reason = None
        record = existing
    else:
        record = PermanentOptOut(
            id=uuid4(),
            tenant_scope=tenant_scope,
            phone_number=phone_number,
            reason=reason,
            request_method=method,
            request_date=utcnow(),
            contact_ref=contact_ref,
            processed_by=processed_by,
            notes=notes,
        )
        db.add(record)

    try:
        async with store_errors("opt-out write"):
            await db.flush()
            await db.refresh(record)
    except IntegrityError:
        # Race condition - added by another request
        logger.warning(f"Race condition adding opt-out: {mask_phone(phone_number)}")
        raise DuplicateEntry(
            "Phone number already on internal DNC list",
            details={"phone_number": phone_number},
        )

    logger.info(
        f"Added {mask_phone(phone_number)} to internal DNC list (method: {method})",
        extra={"tenant_scope": tenant_scope, "phone": mask_phone(phone_number)},
    )
    return record


async def remove_opt_out(
    db: AsyncSession,
    tenant_scope: str,
    phone_number: str,
    removed_by: str,
    removed_reason: str,
) -> PermanentOptOut:
    """
    Soft-remove an active opt-out. The record stays for audit.

    Raises:
        NotFound: If there is no active opt-out for the number
    """
    record = await find_opt_out(db, tenant_scope, phone_number, include_removed=False)
    if not record:
        logger.info(
            f"Opt-out not found for removal: {mask_phone(phone_number)}",
            extra={"tenant_scope": tenant_scope, "phone": mask_phone(phone_number)},
        )
        raise NotFound(
            "Phone number not found on internal DNC list",
            details={"phone_number": phone_number},
        )

    record.removed_date = utcnow()
    record.removed_by = removed_by
    record.removed_reason = removed_reason

    async with store_errors("opt-out removal"):
        await db.flush()
        await db.refresh(record)

    logger.info(
        f"Removed {mask_phone(phone_number)} from internal DNC list",
        extra={"tenant_scope": tenant_scope, "phone": mask_phone(phone_number)},
    )
    return record


async def list_opt_outs(
    db: AsyncSession,
    tenant_scope: str,
    include_removed: bool = False,
    page: int = 1,
    page_size: int = 25,
) -> tuple[list[PermanentOptOut], int]:
    """
    Get a tenant's opt-outs, newest first.

    Returns:
        Tuple of (records, total count)
    """
    query = select(PermanentOptOut).where(PermanentOptOut.tenant_scope == tenant_scope)
    if not include_removed:
        query = query.where(PermanentOptOut.removed_date.is_(None))

    async with store_errors("opt-out listing"):
        total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
        result = await db.execute(
            query.order_by(PermanentOptOut.request_date.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total


# --- Upload batch ledger -------------------------------------------------


async def create_batch(
    db: AsyncSession,
    tenant_scope: str | None,
    filename: str,
    source: str,
    state: str | None = None,
    uploaded_by: str | None = None,
    file_size_bytes: int | None = None,
) -> UploadBatch:
    """Open an upload batch in PROCESSING and commit it so it is visible to sweeps."""
    batch = UploadBatch(
        id=uuid4(),
        tenant_scope=tenant_scope,
        filename=filename,
        source=source,
        state=state,
        uploaded_by=uploaded_by,
        file_size_bytes=file_size_bytes,
        total_records=0,
        successful_imports=0,
        failed_imports=0,
        duplicate_imports=0,
        errors=[],
        status=BatchStatus.PROCESSING.value,
        upload_date=utcnow(),
    )
    async with store_errors("batch creation"):
        db.add(batch)
        await db.commit()
    return batch


async def get_batch(
    db: AsyncSession,
    batch_id: UUID,
    tenant_scope: str | None,
) -> UploadBatch:
    """
    Get an upload batch owned by a tenant.

    Raises:
        NotFound: If the batch does not exist in this scope
    """
    async with store_errors("batch lookup"):
        batch = await db.get(UploadBatch, batch_id)
    if batch is None or batch.tenant_scope != tenant_scope:
        raise NotFound(f"Upload batch {batch_id} not found", details={"batch_id": str(batch_id)})
    return batch


async def list_batches(
    db: AsyncSession,
    tenant_scope: str | None,
    page: int = 1,
    page_size: int = 25,
) -> tuple[list[UploadBatch], int]:
    """Get upload history for a tenant, newest first."""
    if tenant_scope is None:
        query = select(UploadBatch).where(UploadBatch.tenant_scope.is_(None))
    else:
        query = select(UploadBatch).where(UploadBatch.tenant_scope == tenant_scope)

    async with store_errors("batch listing"):
        total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
        result = await db.execute(
            query.order_by(UploadBatch.upload_date.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total


async def find_stale_batches(db: AsyncSession, older_than: timedelta) -> list[UploadBatch]:
    """Batches stuck in PROCESSING for longer than a threshold."""
    cutoff = utcnow() - older_than
    async with store_errors("stale batch lookup"):
        result = await db.execute(
            select(UploadBatch).where(
                UploadBatch.status == BatchStatus.PROCESSING.value,
                UploadBatch.upload_date < cutoff,
            )
        )
        return list(result.scalars().all())


async def fail_stale_batches(db: AsyncSession, older_than: timedelta) -> int:
    """
    Finalize batches stuck in PROCESSING as FAILED.

    Args:
        db: Database session
        older_than: Minimum PROCESSING age

    Returns:
        Number of batches finalized
    """
    stale = await find_stale_batches(db, older_than)
    if not stale:
        return 0

    now = utcnow()
    for batch in stale:
        logger.warning(
            f"Upload batch {batch.id} stuck in PROCESSING since {batch.upload_date}; marking FAILED",
            extra={"event": "stale_batch", "batch_id": str(batch.id)},
        )
        batch.status = BatchStatus.FAILED.value
        batch.finalized_at = now
        batch.errors = [
            *(batch.errors or []),
            {"row": 0, "raw_value": "", "reason": "Processing abandoned before completion"},
        ]

    async with store_errors("stale batch finalization"):
        await db.flush()
    return len(stale)


async def finalize_batch(
    db: AsyncSession,
    batch: UploadBatch,
    status: BatchStatus,
    total_records: int,
    successful_imports: int,
    failed_imports: int,
    duplicate_imports: int,
    errors: list[dict[str, Any]],
    processing_time_ms: int,
) -> UploadBatch:
    """
    Record the outcome of an upload and commit it.

    A COMPLETED batch is immutable. A batch the stale sweep already marked
    FAILED stays FAILED, but the run's counts and errors are still recorded.
    """
    # The session may have been rolled back after a failed bulk write
    async with store_errors("batch finalization"):
        await db.refresh(batch)
    if batch.status == BatchStatus.COMPLETED.value:
        logger.warning(
            f"Upload batch {batch.id} already finalized as {batch.status}",
            extra={"batch_id": str(batch.id)},
        )
        return batch
    if batch.status == BatchStatus.FAILED.value:
        logger.warning(
            f"Upload batch {batch.id} was marked FAILED while processing; recording counts",
            extra={"batch_id": str(batch.id), "event": "stale_batch_finalized"},
        )
        status = BatchStatus.FAILED
        errors = [*(batch.errors or []), *errors]

    batch.status = status.value
    batch.total_records = total_records
    batch.successful_imports = successful_imports
    batch.failed_imports = failed_imports
    batch.duplicate_imports = duplicate_imports
    batch.errors = errors
    batch.processing_time_ms = processing_time_ms
    batch.finalized_at = utcnow()

    async with store_errors("batch finalization"):
        await db.commit()

    logger.info(
        f"Upload batch {batch.id} {status.value}: {successful_imports}/{total_records} imported, "
        f"{failed_imports} failed ({duplicate_imports} duplicates)",
        extra={"batch_id": str(batch.id), "event": "upload_finalized", "count": total_records},
    )
    return batch
