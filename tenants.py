"""
Tenant resolution for a freshly authenticated identity.

Rules:
- No memberships (platform staff): no tenant
- A hint must name an existing, active tenant the identity belongs to
- Exactly one membership: that tenant
- Several memberships and no hint: the caller must choose; never guess
"""
import logging

from models import db, Tenant
from errors import MultiTenantSelectRequired, NoTenantAccess, TenantNotExist

logger = logging.getLogger(__name__)


def list_candidate_tenants(user):
    """Active tenants the identity can sign in to, as selection summaries."""
    return [tenant.to_summary() for tenant in user.available_tenants()]


def resolve_tenant(user, tenant_hint=None):
    """
    Pick the tenant for this login.

    Returns:
        Tenant, or None for identities with no memberships

    Raises:
        TenantNotExist: hint names a tenant that is missing, deleted or suspended
        NoTenantAccess: hint names a tenant the identity is not a member of
        MultiTenantSelectRequired: several candidates and no usable hint
    """
    candidates = user.available_tenants()

    if tenant_hint:
        tenant = db.session.get(Tenant, str(tenant_hint))
        if tenant is None or not tenant.is_available:
            raise TenantNotExist()
        if tenant not in candidates:
            raise NoTenantAccess()
        return tenant

    if not candidates:
        if user.memberships.count() > 0:
            # Every membership points at a suspended or deleted tenant
            raise NoTenantAccess()
        return None

    if len(candidates) == 1:
        return candidates[0]

    logger.info(f"Identity {user.id} has {len(candidates)} tenants, selection required")
    raise MultiTenantSelectRequired([tenant.to_summary() for tenant in candidates])
