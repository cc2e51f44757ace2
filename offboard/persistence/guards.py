from __future__ import annotations

from dataclasses import dataclass
import re

from offboard.core.errors import InvalidTenantIdError


_TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Raised when a destructive query would run without a tenant predicate.
    message: str


def validate_tenant_id(tenant_id: str | None) -> str:
    if not tenant_id or not _TENANT_ID_PATTERN.match(tenant_id):
        raise InvalidTenantIdError(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id


def tenant_predicate(model, tenant_id: str) -> object:
    # Every tenant-scoped statement builds its WHERE clause through here.
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")
    column = getattr(model, "tenant_id", None)
    if column is None:
        column = getattr(getattr(model, "c", None), "tenant_id", None)
    if column is None:
        raise TenantPredicateError(f"{model!r} has no tenant_id column")
    return column == tenant_id
