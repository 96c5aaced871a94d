#!/usr/bin/env python3
"""Run the auth API locally against a SQLite file."""
import os

os.environ.setdefault('DATABASE_URL', 'sqlite:///auth_local.db')
os.environ.setdefault('SECRET_KEY', 'local-dev-secret-key')
os.environ.setdefault('TOTP_ISSUER', 'MyBizStream (local)')

from app import app

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=5001)
