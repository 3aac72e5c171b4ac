from __future__ import annotations

from cmdbgraph.core.config import get_settings
from cmdbgraph.core.errors import TenantPredicateError, TenantRequiredError


def require_tenant(tenant_id: str | None) -> str:
    """Reject a blank client tenant at a service entry point.

    Always enforced: a CI row or edge with an empty ``tenant_id`` would be
    visible to no client and unreachable by identity.
    """
    if tenant_id is None or not str(tenant_id).strip():
        raise TenantRequiredError("tenant_id is required")
    return tenant_id


def require_tenant_id(tenant_id: str | None) -> None:
    # Repository-level check; AUTHZ_REQUIRE_TENANT_PREDICATE turns it off for ad-hoc tooling.
    if not get_settings().authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str) -> object:
    # Works for ORM models and Core column collections (`table.c`).
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id
