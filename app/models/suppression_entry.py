"""Suppression entry model for time-bounded DNC registry records."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Index, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class SuppressionEntry(Base):
    """One phone number on one external-authority or tenant-uploaded list."""

    __tablename__ = "suppression_entries"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    # Canonical E.164 number (+1XXXXXXXXXX)
    phone_number: Mapped[str] = mapped_column(
        String(16),
        index=True,
        nullable=False,
    )

    # NATIONAL, STATE or MANUAL_UPLOAD
    source: Mapped[str] = mapped_column(
        String(20),
        index=True,
        nullable=False,
    )

    # Two-letter state code, only meaningful for STATE entries
    state: Mapped[str | None] = mapped_column(String(2), nullable=True)

    # NULL is the shared global list
    tenant_scope: Mapped[str | None] = mapped_column(
        String(255),
        index=True,
        nullable=True,
    )

    # Back-reference to the upload batch (not owned)
    upload_batch_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        index=True,
        nullable=True,
    )

    # Retention window
    added_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    expiry_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        index=True,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<SuppressionEntry(phone={self.phone_number}, source={self.source}, "
            f"scope={self.tenant_scope})>"
        )


# NULL scopes compare equal here so the global list is unique too
Index(
    "uq_suppression_entries_number_scope_source",
    SuppressionEntry.phone_number,
    func.coalesce(SuppressionEntry.tenant_scope, ""),
    SuppressionEntry.source,
    unique=True,
)
