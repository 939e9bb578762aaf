"""DNC-related Pydantic schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.enums import SUPPRESSION_SOURCES, DNCSource, RequestMethod
from app.services.errors import InvalidFormat
from app.utils.phone_validator import normalize_phone


def _normalized(value: str) -> str:
    try:
        return normalize_phone(value)
    except InvalidFormat as e:
        raise ValueError(e.message) from e


class DNCStatus(BaseModel):
    """Lookup answer for one phone number."""

    phone_number: str
    normalized: str | None = None
    is_on_dnc: bool
    can_call: bool
    source: DNCSource | None = None
    reason: str | None = None
    state: str | None = None
    expires_at: datetime | None = None
    error: str | None = None

    @classmethod
    def clear(cls, phone_number: str, normalized: str) -> "DNCStatus":
        return cls(
            phone_number=phone_number,
            normalized=normalized,
            is_on_dnc=False,
            can_call=True,
        )

    @classmethod
    def invalid(cls, phone_number: str, message: str) -> "DNCStatus":
        """Per-item InvalidFormat answer used in batch mode."""
        return cls(
            phone_number=phone_number,
            is_on_dnc=False,
            can_call=False,
            error=message,
        )


class CheckBatchRequest(BaseModel):
    """Request schema for checking many numbers at once."""

    phone_numbers: list[Any] = Field(
        ...,
        min_length=1,
        description="Phone numbers to check (1-1000)",
    )


class AddOptOutRequest(BaseModel):
    """Request schema for adding a number to the internal DNC list."""

    phone_number: str = Field(..., description="Phone number that opted out")
    reason: str = Field(..., min_length=3, max_length=500, description="Why they opted out")
    request_method: RequestMethod = Field(..., description="How the request was received")
    contact_ref: str | None = Field(None, max_length=255, description="Contact reference")
    processed_by: str | None = Field(None, max_length=255, description="Operator who processed it")
    notes: str | None = Field(None, max_length=1000)

    @field_validator("phone_number")
    @classmethod
    def validate_phone_number(cls, v: str) -> str:
        """Normalize to E.164."""
        return _normalized(v)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        """Validate reason is not blank."""
        if len(v.strip()) < 3:
            raise ValueError("Reason must be at least 3 characters")
        return v.strip()


class RemoveOptOutRequest(BaseModel):
    """Request schema for removing a number from the internal DNC list."""

    removed_by: str = Field(..., min_length=2, max_length=255)
    removed_reason: str = Field(..., min_length=5, max_length=500)


class OptOutItem(BaseModel):
    """Internal DNC list item."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    phone_number: str
    reason: str
    request_method: RequestMethod
    request_date: datetime
    contact_ref: str | None = None
    processed_by: str | None = None
    notes: str | None = None
    removed_date: datetime | None = None
    removed_by: str | None = None
    removed_reason: str | None = None


class RowError(BaseModel):
    """One rejected CSV row."""

    row: int
    raw_value: str
    reason: str


class UploadBatchItem(BaseModel):
    """Upload history item."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    filename: str
    upload_date: datetime
    uploaded_by: str | None = None
    source: DNCSource
    state: str | None = None
    status: str
    total_records: int
    successful_imports: int
    failed_imports: int
    duplicate_imports: int
    file_size_bytes: int | None = None
    processing_time_ms: int | None = None
    errors: list[RowError] = []


class UploadResponse(BaseModel):
    """Response for a CSV upload."""

    batch_id: UUID
    status: str
    total_records: int
    successful_imports: int
    failed_imports: int
    duplicate_imports: int
    processing_time_ms: int | None = None
    errors: list[RowError]


class GuardRequest(BaseModel):
    """Pre-call gate request. Any value is accepted; unparsable numbers fail open."""

    phone_number: Any = Field(None, description="Number about to be dialed")


class GateResponse(BaseModel):
    """Pre-call gate decision."""

    allowed: bool
    phone_number: str
    source: DNCSource | None = None
    reason: str | None = None
    fail_open: bool = False


class SweepResponse(BaseModel):
    """Response for the cleanup endpoint."""

    deleted_count: int
    stale_batches_failed: int
    skipped: bool


class RollbackResponse(BaseModel):
    """Response for rolling back a batch's entries."""

    batch_id: UUID
    deleted_count: int


def parse_upload_source(value: str) -> DNCSource:
    """
    Parse an upload source, accepting the legacy MANUAL alias.

    Raises:
        ValueError: If the source is not an uploadable list type
    """
    normalized = (value or "").strip().upper()
    if normalized == "MANUAL":
        normalized = DNCSource.MANUAL_UPLOAD.value
    try:
        source = DNCSource(normalized)
    except ValueError:
        raise ValueError(f"Invalid source '{value}'. Expected NATIONAL, STATE or MANUAL_UPLOAD")
    if source not in SUPPRESSION_SOURCES:
        raise ValueError("INTERNAL entries are added through the internal DNC list, not uploads")
    return source
