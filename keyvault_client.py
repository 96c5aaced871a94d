"""
Azure Key Vault client for secure credential management.

Secrets read from Key Vault when AZURE_KEYVAULT_URL is configured:
- flask-secret-key: Flask session signing key
- database-url: database connection string (optional, can use env var)
- token-signing-key: HS256 key for step-up and access tokens
- totp-encryption-key: Fernet key material for TOTP secrets at rest
- backup-code-pepper: HMAC key for backup-code and refresh-token hashes
"""
import logging
import os
from azure.keyvault.secrets import SecretClient
from azure.identity import DefaultAzureCredential

logger = logging.getLogger(__name__)


class KeyVaultClient:
    """Azure Key Vault client with environment variable fallback."""

    def __init__(self):
        self.vault_url = os.environ.get('AZURE_KEYVAULT_URL')
        self._client = None
        self._credential = None
        self._initialized = False
        self._init_error = None

    def _initialize(self):
        """Lazy initialization of Key Vault client.

        Without a vault URL nothing is attempted and every lookup goes straight
        to the environment.
        """
        if not self.vault_url:
            return False

        if self._initialized and self._client is not None:
            return True

        self._initialized = True
        self._init_error = None
        self._client = None
        self._credential = None

        try:
            self._credential = DefaultAzureCredential()
            self._client = SecretClient(vault_url=self.vault_url, credential=self._credential)
            logger.info(f"Azure Key Vault client initialized: {self.vault_url}")
            return True
        except Exception as e:
            self._init_error = str(e)
            logger.warning(f"Azure Key Vault not available: {e}. Using environment variables as fallback.")
            return False

    @property
    def is_available(self):
        """Check if Key Vault is available."""
        return self._initialize() and self._client is not None

    def get_secret(self, secret_name, fallback_env_var=None, default=None):
        """
        Get a secret from Key Vault with fallback to environment variable.

        Args:
            secret_name: Name of the secret in Key Vault
            fallback_env_var: Environment variable to use if Key Vault unavailable
            default: Default value if neither Key Vault nor env var has the secret

        Returns:
            The secret value, or default if not found
        """
        if self._initialize() and self._client:
            try:
                secret = self._client.get_secret(secret_name)
                return secret.value
            except Exception as e:
                logger.debug(f"Secret '{secret_name}' not found in Key Vault: {e}")

        if fallback_env_var:
            env_value = os.environ.get(fallback_env_var)
            if env_value:
                return env_value

        return default

    def get_flask_secret_key(self):
        """
        Get Flask SECRET_KEY.

        Priority:
        1. Key Vault 'flask-secret-key'
        2. Environment variable 'SECRET_KEY'
        3. None (caller should generate a random key with warning)
        """
        return self.get_secret('flask-secret-key', fallback_env_var='SECRET_KEY')

    def get_database_url(self):
        """Get database URL, defaulting to a local SQLite file."""
        return self.get_secret(
            'database-url',
            fallback_env_var='DATABASE_URL',
            default='sqlite:///auth.db'
        )

    def get_token_signing_key(self):
        """Get the HS256 key for step-up and access tokens. Falls back to SECRET_KEY."""
        return self.get_secret('token-signing-key', fallback_env_var='JWT_SECRET_KEY') \
            or self.get_flask_secret_key()

    def get_totp_encryption_key(self):
        """Get key material used to encrypt TOTP secrets at rest."""
        return self.get_secret('totp-encryption-key', fallback_env_var='TOTP_ENCRYPTION_KEY')

    def get_backup_code_pepper(self):
        """Get the HMAC key for backup-code and refresh-token hashes."""
        return self.get_secret('backup-code-pepper', fallback_env_var='BACKUP_CODE_PEPPER')


# Global instance
keyvault_client = KeyVaultClient()
