"""Permanent opt-out model (the tenant's internal DNC list)."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class PermanentOptOut(Base):
    """A contact's explicit request not to be called. Never expires."""

    __tablename__ = "permanent_opt_outs"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    tenant_scope: Mapped[str] = mapped_column(
        String(255),
        index=True,
        nullable=False,
    )
    phone_number: Mapped[str] = mapped_column(
        String(16),
        index=True,
        nullable=False,
    )

    # Request details
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    request_method: Mapped[str] = mapped_column(String(20), nullable=False)
    request_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    contact_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Soft revocation (record is kept for audit)
    removed_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    removed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    removed_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("tenant_scope", "phone_number", name="uq_opt_outs_scope_number"),
    )

    @property
    def is_active(self) -> bool:
        """Whether the opt-out is currently enforced."""
        return self.removed_date is None

    def __repr__(self) -> str:
        return (
            f"<PermanentOptOut(phone={self.phone_number}, scope={self.tenant_scope}, "
            f"active={self.is_active})>"
        )
