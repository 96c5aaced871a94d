"""
Tests for tenant resolution after a successful password check.
"""
import pytest

from errors import MultiTenantSelectRequired, NoTenantAccess, TenantNotExist
from models import BusinessType, IdentityRole
from tenants import resolve_tenant, list_candidate_tenants


class TestResolveTenant:
    """Tests for resolve_tenant."""

    def test_single_membership_resolves(self, session, make_user, make_tenant):
        """One membership is selected without a hint."""
        tenant = make_tenant()
        user = make_user(tenants=[tenant])
        assert resolve_tenant(user) == tenant

    def test_no_memberships_resolves_to_none(self, session, make_user):
        """Platform staff have no tenant."""
        user = make_user(email='ops@x.com', role=IdentityRole.PLATFORM_ADMIN)
        assert resolve_tenant(user) is None

    def test_valid_hint_wins_over_ambiguity(self, session, make_user, make_tenant):
        """A hint naming one of several memberships resolves to it."""
        a = make_tenant(name='A Clinic')
        b = make_tenant(name='B Salon', business_type=BusinessType.SALON)
        user = make_user(tenants=[a, b])
        assert resolve_tenant(user, b.id) == b

    def test_several_memberships_without_hint_lists_candidates(self, session, make_user, make_tenant):
        """Ambiguity raises with exactly the candidate set, never a guess."""
        a = make_tenant(name='A Clinic')
        b = make_tenant(name='B Salon', business_type=BusinessType.SALON)
        make_tenant(name='Not Mine')
        user = make_user(tenants=[a, b])

        with pytest.raises(MultiTenantSelectRequired) as exc:
            resolve_tenant(user)

        body = exc.value.to_dict()
        assert exc.value.status == 409
        assert body['state'] == 'awaiting_tenant_selection'
        assert {t['id'] for t in body['tenants']} == {a.id, b.id}
        salon = next(t for t in body['tenants'] if t['id'] == b.id)
        assert salon == {
            'id': b.id,
            'name': 'B Salon',
            'slug': 'b-salon',
            'country': 'IN',
            'businessType': 'salon',
        }

    def test_suspended_and_deleted_tenants_are_not_candidates(self, session, make_user, make_tenant):
        """Unavailable tenants never appear in the selection list."""
        live = make_tenant(name='Live Clinic')
        suspended = make_tenant(name='Paused Salon', status='suspended')
        deleted = make_tenant(name='Gone Gym', deleted=True)
        user = make_user(tenants=[live, suspended, deleted])

        assert [t['id'] for t in list_candidate_tenants(user)] == [live.id]
        assert resolve_tenant(user) == live

    def test_hint_for_missing_tenant(self, session, make_user, make_tenant):
        """An unknown id raises TenantNotExist."""
        user = make_user(tenants=[make_tenant()])
        with pytest.raises(TenantNotExist) as exc:
            resolve_tenant(user, 'no-such-tenant')
        assert exc.value.status == 404

    def test_hint_for_deleted_tenant(self, session, make_user, make_tenant):
        """A soft-deleted tenant is treated as missing."""
        deleted = make_tenant(deleted=True)
        user = make_user(tenants=[deleted, make_tenant(name='Other')])
        with pytest.raises(TenantNotExist):
            resolve_tenant(user, deleted.id)

    def test_hint_for_foreign_tenant(self, session, make_user, make_tenant):
        """A real tenant the identity does not belong to raises NoTenantAccess."""
        mine = make_tenant(name='Mine')
        theirs = make_tenant(name='Theirs')
        user = make_user(tenants=[mine])
        with pytest.raises(NoTenantAccess) as exc:
            resolve_tenant(user, theirs.id)
        assert exc.value.status == 403

    def test_only_unavailable_memberships(self, session, make_user, make_tenant):
        """Members of nothing but suspended tenants get NoTenantAccess, not platform access."""
        user = make_user(tenants=[make_tenant(status='suspended')])
        with pytest.raises(NoTenantAccess):
            resolve_tenant(user)
