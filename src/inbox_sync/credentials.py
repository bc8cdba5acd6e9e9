# =============================================================================
# Credential Resolver
# =============================================================================
# Turns a stored account into a ConnectionProfile for one network session.
#
# Account passwords are stored as Fernet tokens. The Fernet key itself never
# lives in the database: it is read from the system keyring, falling back to
# an environment variable for headless deployments.
#
#   keyring set inbox-sync secret-key          # store the key
#   export INBOX_SYNC_SECRET_KEY=...           # or provide it via env
#
# Generate a key with SecretCipher.generate_key().
# =============================================================================

import logging
import os

import keyring
from cryptography.fernet import Fernet, InvalidToken
from keyring.errors import KeyringError

from inbox_sync.config import SecurityConfig
from inbox_sync.core import ConnectionProfile
from inbox_sync.errors import AccountNotFoundError, DecryptionError
from inbox_sync.storage import Repository

logger = logging.getLogger(__name__)


class SecretCipher:
    """
    Symmetric encryption of account secrets (Fernet).

    Args:
        key: urlsafe base64-encoded 32-byte Fernet key.

    Raises:
        DecryptionError: If the key is malformed.
    """

    def __init__(self, key: str | bytes) -> None:
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise DecryptionError(f"Invalid secret key: {e}") from e

    @staticmethod
    def generate_key() -> str:
        """Create a new random key."""
        return Fernet.generate_key().decode("ascii")

    @classmethod
    def from_settings(cls, settings: SecurityConfig) -> "SecretCipher":
        """
        Load the key from the keyring, then from the environment.

        Raises:
            DecryptionError: If no key is available anywhere.
        """
        key = None
        try:
            key = keyring.get_password(settings.keyring_service, settings.keyring_key)
        except KeyringError as e:
            logger.debug(f"Keyring unavailable ({e}), trying ${settings.key_env}")

        if not key:
            key = os.environ.get(settings.key_env)

        if not key:
            raise DecryptionError(
                f"No secret key found. Set it with: keyring set "
                f"{settings.keyring_service} {settings.keyring_key} "
                f"(or export {settings.key_env})"
            )
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret for storage."""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """
        Decrypt a stored secret.

        Raises:
            DecryptionError: If the token is empty, corrupt or was encrypted
                             with another key.
        """
        if not token:
            raise DecryptionError("Stored secret is empty")
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise DecryptionError("Stored secret could not be decrypted") from e


class CredentialResolver:
    """
    Looks up accounts and decrypts their secrets.

    Args:
        repository: Source of account records.
        cipher: Cipher holding the secret key. When omitted, the key is
                loaded from the keyring/environment on first use.
        security: Where to look for the key when no cipher is given.
    """

    def __init__(
        self,
        repository: Repository,
        cipher: SecretCipher | None = None,
        *,
        security: SecurityConfig | None = None,
    ) -> None:
        self.repository = repository
        self._cipher = cipher
        self._security = security or SecurityConfig()

    @property
    def cipher(self) -> SecretCipher:
        """
        The cipher used to decrypt account secrets.

        Raises:
            DecryptionError: If no key is available.
        """
        if self._cipher is None:
            self._cipher = SecretCipher.from_settings(self._security)
        return self._cipher

    async def resolve(self, user_id: int, account_code: str) -> ConnectionProfile:
        """
        Build the connection profile for one of a user's accounts.

        Returns:
            Profile with the decrypted password.

        Raises:
            AccountNotFoundError: If the account doesn't exist or is inactive.
            DecryptionError: If the password can't be decrypted.
        """
        account = await self.repository.get_account(user_id, account_code)
        if account is None or not account.is_active:
            raise AccountNotFoundError(
                f"No active account {account_code!r} for user {user_id}"
            )

        try:
            password = self.cipher.decrypt(account.encrypted_password)
        except DecryptionError:
            logger.error(f"Failed to decrypt password for account {account_code}")
            raise

        return ConnectionProfile(
            account_code=account.account_code,
            email=account.email,
            protocol=account.protocol,
            host=account.host,
            port=account.port,
            username=account.login,
            password=password,
            security=account.security,
        )
