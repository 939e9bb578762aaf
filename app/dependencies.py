"""Shared FastAPI dependencies."""

from fastapi import Header

from app.services.errors import ValidationFailed

MAX_TENANT_ID_LENGTH = 64


def get_tenant_scope(x_tenant_id: str | None = Header(None)) -> str | None:
    """
    Resolve the tenant partition from the X-Tenant-ID header.

    A missing or blank header selects the shared global scope (None).
    """
    if x_tenant_id is None or not x_tenant_id.strip():
        return None
    tenant_scope = x_tenant_id.strip()
    if len(tenant_scope) > MAX_TENANT_ID_LENGTH:
        raise ValidationFailed(
            "Invalid tenant identifier",
            details=[{"field": "X-Tenant-ID", "message": f"At most {MAX_TENANT_ID_LENGTH} characters"}],
        )
    return tenant_scope


def require_tenant_scope(x_tenant_id: str | None = Header(None)) -> str:
    """Like get_tenant_scope, but the internal DNC list always belongs to a tenant."""
    tenant_scope = get_tenant_scope(x_tenant_id)
    if tenant_scope is None:
        raise ValidationFailed(
            "X-Tenant-ID header is required",
            details=[{"field": "X-Tenant-ID", "message": "Internal DNC lists are tenant-private"}],
        )
    return tenant_scope
