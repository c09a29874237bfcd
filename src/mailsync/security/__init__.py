# =============================================================================
# Security Module
# =============================================================================
# Field-level encryption for stored message content.
# =============================================================================

from mailsync.security.encryption import EncryptionError, FieldCipher, load_cipher

__all__ = ["EncryptionError", "FieldCipher", "load_cipher"]
