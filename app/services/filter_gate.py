"""Pre-call filter gate.

Wraps the lookup engine for the dialer. The gate fails open: when the number
cannot be parsed or the registry store cannot answer, the call is allowed and
a warning with event="dnc_fail_open" is logged. It never raises.
"""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import Settings, settings
from app.models.enums import DNCSource
from app.services import lookup_service
from app.services.errors import DNCError, StoreUnavailable
from app.utils.phone_masking import mask_phone

logger = logging.getLogger(__name__)

_fail_open_events = 0


@dataclass
class GateDecision:
    """Allow or block verdict for one outbound call."""

    allowed: bool
    phone_number: str
    source: DNCSource | None = None
    reason: str | None = None
    fail_open: bool = False


def fail_open_count() -> int:
    """Fail-open decisions taken by this process since start."""
    return _fail_open_events


def _fail_open(tenant_scope: str | None, phone_number: str, error: Exception) -> GateDecision:
    global _fail_open_events
    _fail_open_events += 1

    error_code = error.code if isinstance(error, DNCError) else type(error).__name__
    logger.warning(
        f"DNC check unavailable for {mask_phone(phone_number)}; allowing call ({error_code})",
        extra={
            "event": "dnc_fail_open",
            "tenant_scope": tenant_scope,
            "phone": mask_phone(phone_number),
            "error_code": error_code,
            "count": _fail_open_events,
        },
    )
    return GateDecision(
        allowed=True,
        phone_number=phone_number,
        reason=f"DNC check skipped: {error_code}",
        fail_open=True,
    )


async def guard(
    db: AsyncSession,
    tenant_scope: str | None,
    phone_number: Any,
    config: Settings | None = None,
) -> GateDecision:
    """
    Decide whether a call to `phone_number` may be placed.

    Store failures are retried up to DNC_GUARD_ATTEMPTS times with a short
    backoff before failing open.

    Args:
        db: Database session
        tenant_scope: Tenant partition key
        phone_number: Number about to be dialed, as entered; missing or
            non-string values fail open like any unparsable number
        config: Settings override

    Returns:
        GateDecision: blocked with the matching source, or allowed
    """
    config = config or settings
    phone_number = "" if phone_number is None else str(phone_number)

    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(StoreUnavailable),
            stop=stop_after_attempt(config.DNC_GUARD_ATTEMPTS),
            wait=wait_exponential(multiplier=0.05, max=0.5),
            reraise=True,
        ):
            with attempt:
                try:
                    status = await lookup_service.check(db, tenant_scope, phone_number)
                except StoreUnavailable:
                    # Leave the session usable for the next attempt
                    await db.rollback()
                    raise
    except Exception as e:
        return _fail_open(tenant_scope, phone_number, e)

    if status.is_on_dnc:
        return GateDecision(
            allowed=False,
            phone_number=phone_number,
            source=status.source,
            reason=status.reason,
        )
    return GateDecision(allowed=True, phone_number=phone_number)
