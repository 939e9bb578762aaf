"""DNC compliance API routes."""

import logging
from uuid import UUID

from fastapi import APIRouter, Body, Depends, File, Form, Query, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.database import get_session, get_session_factory
from app.dependencies import get_tenant_scope, require_tenant_scope
from app.schemas.common import ApiResponse, PaginatedResponse
from app.schemas.dnc import (
    AddOptOutRequest,
    CheckBatchRequest,
    DNCStatus,
    GateResponse,
    GuardRequest,
    OptOutItem,
    RemoveOptOutRequest,
    RollbackResponse,
    SweepResponse,
    UploadBatchItem,
    UploadResponse,
    parse_upload_source,
)
from app.services import filter_gate, ingestion_service, lookup_service, registry_store, sweeper
from app.services.errors import ValidationFailed
from app.utils.phone_validator import normalize_phone

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/upload", response_model=ApiResponse[UploadResponse])
async def upload_dnc_file(
    file: UploadFile = File(..., description="CSV file with one phone number per row"),
    source: str = Form("MANUAL", description="NATIONAL, STATE or MANUAL_UPLOAD"),
    state: str | None = Form(None, description="Two-letter state code for STATE lists"),
    uploaded_by: str | None = Form(None, description="Operator performing the upload"),
    tenant_scope: str | None = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_session),
) -> ApiResponse[UploadResponse]:
    """
    Upload a DNC list as CSV.

    The file is streamed row by row. Each number is normalized to E.164 and
    stored with a 31-day expiry (re-download the registry monthly). Rows that
    fail validation are counted and reported; numbers already on the same
    list count as duplicates.

    **Form Fields:**
    - `file`: CSV file, max 10 MB. A header row with a `phone`/`phoneNumber`
      column is detected automatically; otherwise the first column is used.
    - `source`: `NATIONAL`, `STATE` or `MANUAL_UPLOAD` (legacy `MANUAL` accepted)
    - `state`: Required for `STATE` uploads
    - `uploaded_by`: Optional operator name

    **Response:**
    - Batch id, totals and the first row errors
    - 400 Bad Request: Bad source/state, or MANUAL_UPLOAD without `X-Tenant-ID`
    - 413 Payload Too Large: File over the size limit
    - 415 Unsupported Media Type: Not a CSV file
    - 503 Service Unavailable: Store failed; the batch is recorded as FAILED

    **Example:**
    ```bash
    curl -X POST https://api.example.com/api/dnc/upload \\
      -H "X-Tenant-ID: acme" \\
      -F "file=@dnc.csv" -F "source=NATIONAL"
    ```
    """
    try:
        dnc_source = parse_upload_source(source)
    except ValueError as e:
        raise ValidationFailed(str(e), details=[{"field": "source", "message": str(e)}])

    batch = await ingestion_service.ingest(
        db,
        tenant_scope=tenant_scope,
        stream=file,
        filename=file.filename or "upload.csv",
        source=dnc_source,
        state=state,
        uploaded_by=uploaded_by,
        content_type=file.content_type,
        size=file.size,
    )

    return ApiResponse(
        data=UploadResponse(
            batch_id=batch.id,
            status=batch.status,
            total_records=batch.total_records,
            successful_imports=batch.successful_imports,
            failed_imports=batch.failed_imports,
            duplicate_imports=batch.duplicate_imports,
            processing_time_ms=batch.processing_time_ms,
            errors=(batch.errors or [])[:settings.DNC_UPLOAD_ERRORS_SURFACED],
        ),
        message=f"Successfully imported {batch.successful_imports} DNC records",
    )


@router.get("/uploads", response_model=ApiResponse[PaginatedResponse[UploadBatchItem]])
async def list_uploads(
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(25, ge=1, le=100, description="Items per page (max 100)"),
    tenant_scope: str | None = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_session),
) -> ApiResponse[PaginatedResponse[UploadBatchItem]]:
    """Get upload history for the tenant, newest first."""
    batches, total = await registry_store.list_batches(db, tenant_scope, page, page_size)
    return ApiResponse(
        data=PaginatedResponse[UploadBatchItem].create(
            items=[UploadBatchItem.model_validate(batch) for batch in batches],
            total=total,
            page=page,
            page_size=page_size,
        ),
    )


@router.get("/uploads/{batch_id}", response_model=ApiResponse[UploadBatchItem])
async def get_upload(
    batch_id: UUID,
    tenant_scope: str | None = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_session),
) -> ApiResponse[UploadBatchItem]:
    """Get one upload batch with its stored row errors."""
    batch = await registry_store.get_batch(db, batch_id, tenant_scope)
    return ApiResponse(data=UploadBatchItem.model_validate(batch))


@router.delete("/uploads/{batch_id}/entries", response_model=ApiResponse[RollbackResponse])
async def rollback_upload(
    batch_id: UUID,
    tenant_scope: str | None = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_session),
) -> ApiResponse[RollbackResponse]:
    """
    Delete the suppression entries an upload created.

    The batch record itself stays for audit. Use this when a wrong file was
    uploaded; numbers from other batches are not affected.
    """
    batch = await registry_store.get_batch(db, batch_id, tenant_scope)
    deleted = await registry_store.delete_batch_entries(db, batch.id)
    return ApiResponse(
        data=RollbackResponse(batch_id=batch.id, deleted_count=deleted),
        message=f"Removed {deleted} entries",
    )


@router.get("/check/{phone_number}", response_model=ApiResponse[DNCStatus])
async def check_phone_number(
    phone_number: str,
    tenant_scope: str | None = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_session),
) -> ApiResponse[DNCStatus]:
    """
    Check whether a phone number may be called.

    Checked in order: the tenant's internal DNC list, the National registry,
    the state list for the number's area code, the tenant's uploaded lists.
    Expired entries never match.

    **Path Parameter:**
    - `phone_number`: Any common US format (URL-encoded), e.g. `+12025551234`,
      `(202) 555-1234`, `202.555.1234`

    **Response:**
    ```json
    {
      "success": true,
      "data": {
        "phone_number": "+12025551234",
        "normalized": "+12025551234",
        "is_on_dnc": true,
        "can_call": false,
        "source": "NATIONAL",
        "reason": "Listed on the National Do Not Call Registry"
      }
    }
    ```

    - 400 Bad Request: Not a valid North American number
    """
    result = await lookup_service.check(db, tenant_scope, phone_number)
    return ApiResponse(data=result)


@router.post("/check-batch", response_model=ApiResponse[list[DNCStatus]])
async def check_batch(
    request: CheckBatchRequest,
    tenant_scope: str | None = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> ApiResponse[list[DNCStatus]]:
    """
    Check up to 1000 phone numbers at once.

    Results come back in request order. A malformed number gets an item with
    `error` set and `can_call=false`; it does not fail the request.
    """
    results = await lookup_service.check_batch(
        db, tenant_scope, request.phone_numbers, session_factory=session_factory,
    )
    return ApiResponse(data=results)


@router.post("/guard", response_model=ApiResponse[GateResponse])
async def guard_call(
    response: Response,
    request: GuardRequest | None = None,
    tenant_scope: str | None = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_session),
) -> ApiResponse[GateResponse]:
    """
    Pre-call gate for dialers.

    **Response:**
    - 200 OK: Call allowed
    - 403 Forbidden: Number is on a DNC list; `source` and `reason` say which

    If the number is missing or unparsable, or the registry is unavailable, the
    call is allowed with `fail_open=true` and a warning is logged. The gate
    never answers with an error.
    """
    phone_number = request.phone_number if request is not None else None
    decision = await filter_gate.guard(db, tenant_scope, phone_number)
    if not decision.allowed:
        response.status_code = status.HTTP_403_FORBIDDEN

    return ApiResponse(
        success=decision.allowed,
        data=GateResponse(
            allowed=decision.allowed,
            phone_number=decision.phone_number,
            source=decision.source,
            reason=decision.reason,
            fail_open=decision.fail_open,
        ),
        message=None if decision.allowed else "Number is on the Do Not Call list",
    )


@router.post(
    "/internal/add",
    response_model=ApiResponse[OptOutItem],
    status_code=status.HTTP_201_CREATED,
)
async def add_to_internal_dnc(
    request: AddOptOutRequest,
    tenant_scope: str = Depends(require_tenant_scope),
    db: AsyncSession = Depends(get_session),
) -> ApiResponse[OptOutItem]:
    """
    Add a number to the tenant's internal DNC list.

    Internal opt-outs never expire. Required under the TCPA when a contact
    asks not to be called again.

    **Request Body:**
    ```json
    {
      "phone_number": "(202) 555-1234",
      "reason": "Asked not to be called during the 3/4 call",
      "request_method": "PHONE_CALL"
    }
    ```

    **Response:**
    - 201 Created: Number added
    - 400 Bad Request: Invalid number or missing fields
    - 409 Conflict: Number already on the internal list
    """
    record = await registry_store.add_opt_out(
        db,
        tenant_scope=tenant_scope,
        phone_number=request.phone_number,
        reason=request.reason,
        request_method=request.request_method,
        contact_ref=request.contact_ref,
        processed_by=request.processed_by,
        notes=request.notes,
    )
    return ApiResponse(
        data=OptOutItem.model_validate(record),
        message="Added to internal DNC list",
    )


@router.delete("/internal/{phone_number}", response_model=ApiResponse[OptOutItem])
async def remove_from_internal_dnc(
    phone_number: str,
    request: RemoveOptOutRequest = Body(...),
    tenant_scope: str = Depends(require_tenant_scope),
    db: AsyncSession = Depends(get_session),
) -> ApiResponse[OptOutItem]:
    """
    Remove a number from the tenant's internal DNC list.

    The record is kept with `removed_date`, `removed_by` and `removed_reason`
    set, so the opt-out history stays auditable.

    **Response:**
    - 200 OK: Number removed
    - 404 Not Found: Number not on the internal list
    """
    record = await registry_store.remove_opt_out(
        db,
        tenant_scope=tenant_scope,
        phone_number=normalize_phone(phone_number),
        removed_by=request.removed_by,
        removed_reason=request.removed_reason,
    )
    return ApiResponse(
        data=OptOutItem.model_validate(record),
        message="Removed from internal DNC list",
    )


@router.get("/internal", response_model=ApiResponse[PaginatedResponse[OptOutItem]])
async def list_internal_dnc(
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(25, ge=1, le=100, description="Items per page (max 100)"),
    include_removed: bool = Query(False, description="Include removed opt-outs"),
    tenant_scope: str = Depends(require_tenant_scope),
    db: AsyncSession = Depends(get_session),
) -> ApiResponse[PaginatedResponse[OptOutItem]]:
    """Get the tenant's internal DNC list, newest first."""
    records, total = await registry_store.list_opt_outs(
        db, tenant_scope, include_removed=include_removed, page=page, page_size=page_size,
    )
    return ApiResponse(
        data=PaginatedResponse[OptOutItem].create(
            items=[OptOutItem.model_validate(record) for record in records],
            total=total,
            page=page,
            page_size=page_size,
        ),
    )


@router.get("/stats", response_model=ApiResponse[dict])
async def get_stats(
    tenant_scope: str | None = Depends(get_tenant_scope),
    db: AsyncSession = Depends(get_session),
) -> ApiResponse[dict]:
    """Active record counts per source, lapsed-but-unswept count and last upload."""
    stats = await registry_store.count_by_source(db, tenant_scope)
    stats["fail_open_events"] = filter_gate.fail_open_count()
    return ApiResponse(data=stats)


@router.post("/cleanup", response_model=ApiResponse[SweepResponse])
async def cleanup_expired(
    db: AsyncSession = Depends(get_session),
) -> ApiResponse[SweepResponse]:
    """
    Run the expiry sweeper now.

    Returns the number of expired entries removed. If a sweep is already
    running, nothing is done and `skipped` is true.
    """
    result = await sweeper.sweep(db)
    return ApiResponse(
        data=SweepResponse(
            deleted_count=result.deleted,
            stale_batches_failed=result.stale_batches_failed,
            skipped=result.skipped,
        ),
        message=f"Cleaned up {result.deleted} expired records",
    )
