"""Upload batch model: ledger of one CSV ingestion run."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class UploadBatch(Base):
    """Represents a DNC CSV upload and its outcome."""

    __tablename__ = "upload_batches"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    tenant_scope: Mapped[str | None] = mapped_column(
        String(255),
        index=True,
        nullable=True,
    )

    # File details
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    uploaded_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str | None] = mapped_column(String(2), nullable=True)

    # Counters
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_imports: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_imports: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicate_imports: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # First N row failures: [{"row", "raw_value", "reason"}]
    errors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Status tracking
    status: Mapped[str] = mapped_column(
        String(20),
        index=True,
        nullable=False,
        default="PROCESSING",
    )
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Timestamps
    upload_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        index=True,
        nullable=False,
    )
    finalized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<UploadBatch(id={self.id}, filename={self.filename}, status={self.status})>"
