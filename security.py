"""
Security helpers for the authentication API.

This module provides:
1. Client identification for rate limiting and audit rows
2. Security headers
3. Input sanitization
4. Security event logging
"""

from flask import g, has_request_context, request
import logging
import re
import time

import bleach
from werkzeug.middleware.proxy_fix import ProxyFix

logger = logging.getLogger(__name__)

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
USER_AGENT_MAX_LENGTH = 500


# ==================== Client Identification ====================

def trust_proxy_hops(flask_app, hops):
    """
    Honour X-Forwarded-For and X-Forwarded-Proto from exactly `hops` reverse proxies.

    With no configured proxies the headers are ignored.
    """
    if hops > 0:
        flask_app.wsgi_app = ProxyFix(flask_app.wsgi_app, x_for=hops, x_proto=hops)
    return flask_app


def get_client_ip():
    """Client IP as seen by WSGI; trust_proxy_hops rewrites it behind known proxies."""
    if not has_request_context():
        return None
    return request.remote_addr


def get_user_agent():
    if not has_request_context():
        return None
    agent = request.headers.get('User-Agent')
    if agent:
        return agent[:USER_AGENT_MAX_LENGTH]
    return None


# ==================== Security Headers ====================

def get_security_headers():
    """
    Return headers applied to every authentication response on top of Talisman's.
    Tokens must never land in a shared cache.
    """
    return {
        'Cache-Control': 'no-store',
        'Pragma': 'no-cache',
        'X-Content-Type-Options': 'nosniff',
        'Referrer-Policy': 'no-referrer',
    }


def apply_security_headers(response):
    """Apply security headers to a response object."""
    for header, value in get_security_headers().items():
        response.headers[header] = value
    return response


# ==================== Input Validation & Sanitization ====================

def sanitize_string(value, max_length=None):
    """Strip whitespace and all HTML from a string input."""
    if not isinstance(value, str):
        return value

    value = bleach.clean(value.strip(), tags=[], strip=True)

    if max_length and len(value) > max_length:
        value = value[:max_length]

    return value


def sanitize_email(email):
    """
    Sanitize and validate an email address.
    Returns the sanitized email or None if invalid.
    """
    if not email:
        return None

    email = str(email).strip().lower()
    email = bleach.clean(email, tags=[], strip=True)

    if not validate_email(email):
        return None

    return email


def validate_email(email):
    """Basic email format validation."""
    if not email:
        return False
    return bool(re.match(EMAIL_PATTERN, email))


def mask_email(email):
    """alice@example.com -> a***@example.com, for log lines."""
    if not email or '@' not in email:
        return '***'
    local, domain = email.split('@', 1)
    return f"{local[:1]}***@{domain}"


# ==================== Logging Helpers ====================

def log_security_event(event_type, message, user_id=None, severity='INFO'):
    """
    Log a security-related event for auditing.

    Event types: 'auth', 'two_factor', 'enrollment', 'lockout', 'session', 'rate_limit'
    """
    in_request = has_request_context()
    log_data = {
        'event_type': event_type,
        'message': message,
        'user_id': user_id or (g.current_user.id if in_request and getattr(g, 'current_user', None) else None),
        'ip': get_client_ip() if in_request else None,
        'path': request.path if in_request else None,
        'method': request.method if in_request else None,
        'timestamp': time.time(),
    }

    log_message = f"[SECURITY:{event_type.upper()}] {message} | {log_data}"

    if severity == 'WARNING':
        logger.warning(log_message)
    elif severity == 'ERROR':
        logger.error(log_message)
    else:
        logger.info(log_message)
