# =============================================================================
# Field Encryption
# =============================================================================
# Symmetric encryption for message fields at rest (subject and bodies),
# using Fernet (AES-128-CBC + HMAC-SHA256) from the 'cryptography' package.
#
# Key lookup order:
#   1. Explicit key from config ([security] encryption_key)
#   2. $MAILSYNC_ENCRYPTION_KEY
#   3. System keyring (service "mailsync", user "encryption-key"); a new
#      key is generated and stored there on first use.
#
# Values that are not Fernet tokens are returned unchanged by
# decrypt_field(), so rows written before encryption was enabled stay
# readable.
# =============================================================================

import logging
import os

import keyring
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


KEYRING_SERVICE = "mailsync"
KEYRING_USER = "encryption-key"
ENV_VAR = "MAILSYNC_ENCRYPTION_KEY"

# Every Fernet token starts with version byte 0x80, base64url-encoded
_TOKEN_PREFIX = "gAAAAA"


class FieldCipher:
    """
    Encrypts and decrypts individual string fields.

    Usage:
        >>> cipher = FieldCipher(Fernet.generate_key())
        >>> token = cipher.encrypt_field("Quarterly report")
        >>> cipher.decrypt_field(token)
        'Quarterly report'
    """

    def __init__(self, key: bytes | str) -> None:
        """
        Args:
            key: URL-safe base64-encoded 32-byte Fernet key.

        Raises:
            EncryptionError: If the key is malformed.
        """
        if isinstance(key, str):
            key = key.encode("ascii")
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"Invalid encryption key: {e}") from e

    def encrypt_field(self, value: str) -> str:
        """Encrypt a string. Empty strings are stored as-is."""
        if not value:
            return value
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt_field(self, value: str) -> str:
        """
        Decrypt a string produced by encrypt_field().

        Raises:
            EncryptionError: If the value looks like a token but does not
                             verify under this key.
        """
        if not value or not value.startswith(_TOKEN_PREFIX):
            return value
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise EncryptionError("Field does not decrypt with the configured key") from e


def load_cipher(configured_key: str = "") -> FieldCipher:
    """
    Build a FieldCipher from config, environment or keyring.

    Args:
        configured_key: Key from the config file, if any.

    Returns:
        Ready-to-use FieldCipher.
    """
    key = configured_key or os.environ.get(ENV_VAR, "")
    if not key:
        key = keyring.get_password(KEYRING_SERVICE, KEYRING_USER) or ""
    if not key:
        logger.info("No encryption key found, generating one in the system keyring")
        key = Fernet.generate_key().decode("ascii")
        keyring.set_password(KEYRING_SERVICE, KEYRING_USER, key)
    return FieldCipher(key)


# =============================================================================
# Exceptions
# =============================================================================

class EncryptionError(Exception):
    """Raised when a key is invalid or a field cannot be decrypted."""
    pass
