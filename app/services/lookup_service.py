"""DNC lookup engine: single and batch checks with source precedence.

Precedence, first match wins:
    1. Active permanent opt-out for the tenant       -> INTERNAL
    2. Unexpired NATIONAL entry                      -> NATIONAL
    3. Unexpired STATE entry for the number's state  -> STATE
    4. Unexpired MANUAL_UPLOAD entry of the tenant   -> MANUAL_UPLOAD
    5. Otherwise safe to call
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings
from app.models.enums import DNCSource
from app.models.opt_out import PermanentOptOut
from app.models.suppression_entry import SuppressionEntry
from app.schemas.dnc import DNCStatus
from app.services import registry_store
from app.services.errors import BatchTooLarge, InvalidFormat, ValidationFailed
from app.utils.area_codes import infer_state
from app.utils.phone_masking import mask_phone
from app.utils.phone_validator import normalize_phone

logger = logging.getLogger(__name__)

_SOURCE_REASONS = {
    DNCSource.NATIONAL: "Listed on the National Do Not Call Registry",
    DNCSource.STATE: "Listed on the {state} state Do Not Call list",
    DNCSource.MANUAL_UPLOAD: "Listed on an uploaded Do Not Call list",
}


def resolve_status(
    phone_number: str,
    normalized: str,
    tenant_scope: str | None,
    opt_out: PermanentOptOut | None,
    entries: Sequence[SuppressionEntry],
) -> DNCStatus:
    """
    Apply source precedence to the records found for one number.

    Args:
        phone_number: Number as the caller supplied it
        normalized: Canonical E.164 form
        tenant_scope: Tenant partition key
        opt_out: The tenant's opt-out record, if any
        entries: Unexpired suppression entries visible to the tenant

    Returns:
        The DNC status for the number
    """
    if opt_out is not None and opt_out.is_active:
        return DNCStatus(
            phone_number=phone_number,
            normalized=normalized,
            is_on_dnc=True,
            can_call=False,
            source=DNCSource.INTERNAL,
            reason=opt_out.reason,
        )

    number_state = infer_state(normalized)
    by_source: dict[str, list[SuppressionEntry]] = {}
    for entry in entries:
        by_source.setdefault(entry.source, []).append(entry)

    national = by_source.get(DNCSource.NATIONAL.value, [])
    state_matches = [
        entry for entry in by_source.get(DNCSource.STATE.value, [])
        if number_state is not None and entry.state == number_state
    ]
    manual = [
        entry for entry in by_source.get(DNCSource.MANUAL_UPLOAD.value, [])
        if tenant_scope is not None and entry.tenant_scope == tenant_scope
    ]

    for source, candidates in (
        (DNCSource.NATIONAL, national),
        (DNCSource.STATE, state_matches),
        (DNCSource.MANUAL_UPLOAD, manual),
    ):
        if candidates:
            entry = max(candidates, key=lambda e: e.expiry_date)
            return DNCStatus(
                phone_number=phone_number,
                normalized=normalized,
                is_on_dnc=True,
                can_call=False,
                source=source,
                reason=_SOURCE_REASONS[source].format(state=entry.state),
                state=entry.state,
                expires_at=entry.expiry_date,
            )

    return DNCStatus.clear(phone_number, normalized)


def _as_given(raw: Any) -> str:
    return "" if raw is None else str(raw)


async def _lookup_numbers(
    db: AsyncSession,
    tenant_scope: str | None,
    normalized_numbers: Sequence[str],
    now: datetime | None,
) -> dict[str, DNCStatus]:
    """Resolve a set of normalized numbers with two set-based queries."""
    opt_outs: dict[str, PermanentOptOut] = {}
    if tenant_scope is not None:
        opt_outs = await registry_store.find_active_opt_outs_for_numbers(
            db, tenant_scope, normalized_numbers,
        )
    entries = await registry_store.find_suppressions_for_numbers(
        db, tenant_scope, normalized_numbers, now,
    )
    return {
        number: resolve_status(
            number, number, tenant_scope, opt_outs.get(number), entries.get(number, []),
        )
        for number in normalized_numbers
    }


async def check(
    db: AsyncSession,
    tenant_scope: str | None,
    phone_number: str,
    now: datetime | None = None,
) -> DNCStatus:
    """
    Check whether one number may be called.

    Args:
        db: Database session
        tenant_scope: Tenant partition key, None for global lists only
        phone_number: Number in any reasonable format
        now: Reference time for expiry

    Returns:
        DNC status

    Raises:
        InvalidFormat: If the number cannot be normalized
        StoreUnavailable: If the registry store fails
    """
    normalized = normalize_phone(phone_number)
    found = await _lookup_numbers(db, tenant_scope, [normalized], now)
    status = found[normalized].model_copy(update={"phone_number": phone_number})

    if status.is_on_dnc:
        logger.info(
            f"DNC match for {mask_phone(normalized)} (source: {status.source.value})",
            extra={
                "event": "dnc_blocked",
                "tenant_scope": tenant_scope,
                "phone": mask_phone(normalized),
                "source": status.source.value,
            },
        )
    return status


async def check_batch(
    db: AsyncSession,
    tenant_scope: str | None,
    phone_numbers: Sequence[Any],
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    config: Settings | None = None,
    now: datetime | None = None,
) -> list[DNCStatus]:
    """
    Check many numbers, returning statuses in input order.

    Malformed numbers, including non-string items, yield a per-item error status instead of failing the
    request. Distinct numbers are resolved in chunks; with a session factory
    the chunks run concurrently on their own sessions, bounded by
    DNC_LOOKUP_CONCURRENCY.

    Args:
        db: Database session (used when no session factory is given)
        tenant_scope: Tenant partition key
        phone_numbers: 1..DNC_MAX_BATCH_SIZE numbers
        session_factory: Optional factory for concurrent chunk sessions
        config: Settings override
        now: Reference time for expiry

    Returns:
        One DNCStatus per input number, in the same order

    Raises:
        ValidationFailed: If no numbers are given
        BatchTooLarge: If more than DNC_MAX_BATCH_SIZE numbers are given
    """
    config = config or settings

    if not phone_numbers:
        raise ValidationFailed(
            "At least one phone number required",
            details=[{"field": "phone_numbers", "message": "At least one phone number required"}],
        )
    if len(phone_numbers) > config.DNC_MAX_BATCH_SIZE:
        raise BatchTooLarge(
            f"Maximum {config.DNC_MAX_BATCH_SIZE} numbers allowed per batch",
            details={"received": len(phone_numbers), "limit": config.DNC_MAX_BATCH_SIZE},
        )

    normalized: list[str | None] = []
    invalid: dict[int, str] = {}
    for index, raw in enumerate(phone_numbers):
        try:
            normalized.append(normalize_phone(raw))
        except InvalidFormat as e:
            normalized.append(None)
            invalid[index] = e.message

    distinct = list(dict.fromkeys(number for number in normalized if number is not None))
    chunks = [
        distinct[start:start + config.DNC_LOOKUP_CHUNK_SIZE]
        for start in range(0, len(distinct), config.DNC_LOOKUP_CHUNK_SIZE)
    ]

    resolved: dict[str, DNCStatus] = {}
    if session_factory is None or len(chunks) <= 1:
        for chunk in chunks:
            resolved.update(await _lookup_numbers(db, tenant_scope, chunk, now))
    else:
        semaphore = asyncio.Semaphore(config.DNC_LOOKUP_CONCURRENCY)

        async def run_chunk(chunk: list[str]) -> dict[str, DNCStatus]:
            async with semaphore:
                async with session_factory() as session:
                    return await _lookup_numbers(session, tenant_scope, chunk, now)

        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(run_chunk(chunk)) for chunk in chunks]
        except ExceptionGroup as failed:
            # Remaining chunks are cancelled by the group; surface the first failure
            raise failed.exceptions[0] from failed

        for task in tasks:
            resolved.update(task.result())

    results = []
    for index, raw in enumerate(phone_numbers):
        number = normalized[index]
        if number is None:
            results.append(DNCStatus.invalid(_as_given(raw), invalid[index]))
        else:
            results.append(resolved[number].model_copy(update={"phone_number": _as_given(raw)}))

    blocked = sum(1 for status in results if status.is_on_dnc)
    logger.info(
        f"Batch DNC check: {len(results)} numbers, {blocked} blocked, {len(invalid)} invalid",
        extra={"event": "dnc_batch_check", "tenant_scope": tenant_scope, "count": len(results)},
    )
    return results
