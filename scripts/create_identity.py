#!/usr/bin/env python3
"""
Create (or update) an identity for local development, optionally with tenants.

Usage:
    python scripts/create_identity.py alice@x.com --password 'S3cret!'
    python scripts/create_identity.py alice@x.com --tenant "Sunrise Clinic:clinic" --tenant "Bloom Salon:salon"
    python scripts/create_identity.py root@x.com --role super_admin
"""

import argparse
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), '.env'))

from app import app, db, init_database
from models import User, Tenant, TenantMembership, IdentityRole, BusinessType


def _slugify(name):
    return '-'.join(name.lower().split())


def parse_tenant(value):
    """'Name:business_type' -> (name, BusinessType). Type defaults to service."""
    name, _, business_type = value.partition(':')
    try:
        return name.strip(), BusinessType(business_type.strip() or 'service')
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Unknown business type '{business_type}'. Choose from: "
            + ', '.join(b.value for b in BusinessType)
        )


def create_identity(email, password, role=IdentityRole.TENANT_ADMIN, tenants=(), must_change_password=False):
    """Create the identity and any missing tenants and memberships."""
    init_database()

    with app.app_context():
        email = email.strip().lower()
        user = User.query.filter_by(email=email).first()
        if user:
            print(f"User {email} already exists. Updating password and role...")
        else:
            user = User(email=email)
            db.session.add(user)
            print(f"Created user: {email}")

        user.role = role
        user.must_change_password = must_change_password
        user.set_password(password)
        db.session.flush()

        for name, business_type in tenants:
            slug = _slugify(name)
            tenant = Tenant.query.filter_by(slug=slug).first()
            if tenant is None:
                tenant = Tenant(name=name, slug=slug, business_type=business_type)
                db.session.add(tenant)
                db.session.flush()
                print(f"Created tenant: {name} ({business_type.value}) id={tenant.id}")

            if not TenantMembership.query.filter_by(user_id=user.id, tenant_id=tenant.id).first():
                db.session.add(TenantMembership(user_id=user.id, tenant_id=tenant.id))
                print(f"Added {email} to {name}")

        db.session.commit()

        print(f"\n--- Login Credentials ---")
        print(f"Email: {email}")
        print(f"Password: {password}")
        print("Two-factor setup will be required on first login.")


def main():
    parser = argparse.ArgumentParser(description='Create an identity for local development.')
    parser.add_argument('email', help='Email address of the identity')
    parser.add_argument('--password', '-p', default='ChangeMe123!', help='Password (default: ChangeMe123!)')
    parser.add_argument('--role', '-r', default=IdentityRole.TENANT_ADMIN.value,
                        choices=[r.value for r in IdentityRole], help='Identity role')
    parser.add_argument('--tenant', '-t', action='append', default=[], type=parse_tenant,
                        help='Tenant as "Name:business_type"; repeat for several')
    parser.add_argument('--must-change-password', action='store_true',
                        help='Force a password reset after login')

    args = parser.parse_args()
    create_identity(args.email, args.password, IdentityRole(args.role), args.tenant, args.must_change_password)


if __name__ == '__main__':
    main()
