"""
Cryptographic utilities for second-factor material.

Security Design:
- TOTP secrets are encrypted at rest with Fernet (AES-128-CBC with HMAC-SHA256)
- Encrypted values prefixed with 'encrypted:' for identification
- Backup codes and refresh tokens are stored only as HMAC-SHA256 digests keyed
  with a server-side pepper, so a database dump alone cannot be used to test guesses
- Key material comes from Azure Key Vault or the environment
"""
import logging
import base64
import hashlib
import hmac
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

# Prefix to identify encrypted values in the database
ENCRYPTED_PREFIX = 'encrypted:'

DEV_KEY_MATERIAL = 'dev-only-change-me'


class SecretDecryptionError(Exception):
    """Stored secret could not be decrypted with the current key."""


def _derive_fernet_key(material):
    digest = hashlib.sha256(material.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest)


def _get_encryption_key():
    """
    Get the Fernet key for TOTP secrets.

    Any configured string is accepted and stretched to a Fernet key with SHA-256.
    """
    from keyvault_client import keyvault_client

    material = keyvault_client.get_totp_encryption_key() or keyvault_client.get_flask_secret_key()
    if not material:
        logger.warning("TOTP encryption key not configured - using development key")
        material = DEV_KEY_MATERIAL
    return _derive_fernet_key(material)


def _get_pepper():
    from keyvault_client import keyvault_client

    pepper = keyvault_client.get_backup_code_pepper() or keyvault_client.get_flask_secret_key()
    if not pepper:
        logger.warning("Backup code pepper not configured - using development pepper")
        pepper = DEV_KEY_MATERIAL
    return pepper.encode('utf-8')


def encrypt_secret(plaintext):
    """Encrypt a TOTP secret for storage. Returns 'encrypted:<fernet token>'."""
    if not plaintext:
        raise ValueError("Refusing to encrypt an empty secret")

    if is_encrypted(plaintext):
        return plaintext

    f = Fernet(_get_encryption_key())
    encrypted = f.encrypt(plaintext.encode('utf-8'))
    return ENCRYPTED_PREFIX + encrypted.decode('utf-8')


def decrypt_secret(stored):
    """
    Decrypt a stored TOTP secret.

    Raises:
        SecretDecryptionError: value is not encrypted or the key has rotated
    """
    if not is_encrypted(stored):
        raise SecretDecryptionError("Stored secret is not encrypted")

    try:
        f = Fernet(_get_encryption_key())
        decrypted = f.decrypt(stored[len(ENCRYPTED_PREFIX):].encode('utf-8'))
        return decrypted.decode('utf-8')
    except InvalidToken:
        logger.error("Invalid encryption token - secret may be corrupted or key rotated")
        raise SecretDecryptionError("Stored secret could not be decrypted")


def is_encrypted(value):
    if not value:
        return False
    return value.startswith(ENCRYPTED_PREFIX)


def normalize_backup_code(code):
    """Accept codes as typed: any case, with or without the dash and spaces."""
    if not code:
        return ''
    return str(code).strip().replace('-', '').replace(' ', '').upper()


def hash_backup_code(code):
    """Keyed digest of a normalized backup code."""
    normalized = normalize_backup_code(code)
    return hmac.new(_get_pepper(), normalized.encode('utf-8'), hashlib.sha256).hexdigest()


def hash_token(token):
    """Keyed digest of an opaque refresh token."""
    return hmac.new(_get_pepper(), token.encode('utf-8'), hashlib.sha256).hexdigest()
