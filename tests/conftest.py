"""
Pytest fixtures for the authentication API tests.
"""
import os
import sys
import time
import pytest

# Must be set before app is imported
os.environ['FLASK_ENV'] = 'testing'
os.environ['SECRET_KEY'] = 'test-secret-key'
os.environ['JWT_SECRET_KEY'] = 'test-token-signing-key'
os.environ['TOTP_ENCRYPTION_KEY'] = 'test-totp-encryption-key'
os.environ['BACKUP_CODE_PEPPER'] = 'test-backup-code-pepper'
os.environ.pop('AZURE_KEYVAULT_URL', None)

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pyotp

from app import app as flask_app
from models import db, User, Tenant, TenantMembership, BackupCode, IdentityRole, BusinessType
from crypto import encrypt_secret, hash_backup_code

DEFAULT_PASSWORD = 'Passw0rd!'


@pytest.fixture
def app():
    """The real application, bound to a fresh in-memory database."""
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def session(app):
    """Database session for testing."""
    yield db.session


@pytest.fixture
def client(app):
    """Test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def make_tenant(session):
    """Factory for tenants."""
    def _make(name='Sunrise Clinic', business_type=BusinessType.CLINIC, status='active', deleted=False):
        tenant = Tenant(
            name=name,
            slug='-'.join(name.lower().split()),
            country='IN',
            business_type=business_type,
            status=status,
        )
        if deleted:
            from datetime import datetime
            tenant.deleted_at = datetime.utcnow()
        session.add(tenant)
        session.commit()
        return tenant
    return _make


@pytest.fixture
def make_user(session):
    """Factory for identities. Pass totp_secret to create an enrolled identity."""
    def _make(email='alice@x.com', password=DEFAULT_PASSWORD, role=IdentityRole.TENANT_ADMIN,
              tenants=(), totp_secret=None, must_change_password=False):
        user = User(email=email, first_name='Alice', last_name='Admin', role=role,
                    must_change_password=must_change_password)
        user.set_password(password)
        if totp_secret:
            user.totp_secret = encrypt_secret(totp_secret)
            user.two_factor_enabled = True
        session.add(user)
        session.flush()
        for tenant in tenants:
            session.add(TenantMembership(user_id=user.id, tenant_id=tenant.id))
        session.commit()
        return user
    return _make


@pytest.fixture
def add_backup_codes(session):
    """Store the given plaintext codes as an identity's backup codes."""
    def _add(user, codes):
        for code in codes:
            session.add(BackupCode(user_id=user.id, code_hash=hash_backup_code(code)))
        session.commit()
        return codes
    return _add


@pytest.fixture
def totp_secret():
    return pyotp.random_base32()


@pytest.fixture
def wrong_code():
    """A six-digit code guaranteed to be outside the accepted window for a secret."""
    def _wrong(secret):
        totp = pyotp.TOTP(secret)
        now = time.time()
        accepted = {totp.at(now + offset) for offset in (-60, -30, 0, 30, 60)}
        for candidate in ('000000', '111111', '222222', '333333', '444444', '555555'):
            if candidate not in accepted:
                return candidate
    return _wrong
