from __future__ import annotations

from sqlalchemy.orm import Session

from app import models
from app.domain.billing.errors import InvalidTenantContactError, TenantNotFoundError


def resolve_tenant(db: Session, tenant_id: str | None) -> models.Tenant | None:
    if not tenant_id:
        return None
    return (
        db.query(models.Tenant)
        .filter(models.Tenant.id == tenant_id, models.Tenant.deleted_at.is_(None))
        .first()
    )


def get_billable_tenant(db: Session, tenant_id: str) -> models.Tenant:
    """Tenant that can be charged: it exists, is not deleted and has a usable email."""
    tenant = resolve_tenant(db, tenant_id)
    if tenant is None:
        raise TenantNotFoundError("Restaurante no encontrado")
    email = (tenant.contact_email or "").strip()
    if not email or "@" not in email:
        raise InvalidTenantContactError(
            "El restaurante debe tener un correo electrónico válido configurado para procesar pagos"
        )
    return tenant
