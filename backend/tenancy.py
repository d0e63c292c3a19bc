# tenancy.py — Tenant resolution
#
# Binds the tenant a request works in. Precedence for the explicit indicator
# (header > query > subdomain) is decided by the caller; this module only
# chooses between that indicator and the credential's home tenant.
# Resolution is pure: it reads its arguments and returns or raises.

from dataclasses import dataclass
from typing import Optional

from errors import SuperAdminScopeViolation, TenantAccessDenied, TenantRequired
from permissions import Principal


@dataclass(frozen=True)
class TenantContext:
    """Tenant bound to one request.

    ``tenant_id`` is None only for super_admin requests that did not name a
    tenant; such a context can be used for tenant management and nothing else.
    """
    tenant_id: Optional[str]
    source: str = "credential"
    platform_scope: bool = False

    def require_resource_scope(self) -> str:
        """Tenant id for tenant-scoped resource work (projects, tasks, reports, audit)"""
        if self.platform_scope:
            raise SuperAdminScopeViolation()
        if not self.tenant_id:
            raise TenantRequired()
        return self.tenant_id


def resolve_tenant(
    principal: Principal,
    explicit_tenant_id: Optional[str] = None,
    source: str = "header",
) -> TenantContext:
    """Resolve the tenant context for a principal.

    Raises TenantRequired when no tenant can be determined and
    TenantAccessDenied when a tenant-bound principal names another tenant.
    """
    if principal.is_super_admin:
        # Never bound for resource work, whatever tenant was named
        return TenantContext(
            tenant_id=explicit_tenant_id or None,
            source=source if explicit_tenant_id else "platform",
            platform_scope=True,
        )

    if explicit_tenant_id:
        tenant_id, resolved_from = explicit_tenant_id, source
    else:
        tenant_id, resolved_from = principal.tenant_id, "credential"

    if not tenant_id:
        raise TenantRequired()
    if principal.tenant_id != tenant_id:
        raise TenantAccessDenied()
    return TenantContext(tenant_id=tenant_id, source=resolved_from)
