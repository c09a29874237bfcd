# =============================================================================
# Account Model
# =============================================================================
# Represents the credential bundle for one remote IMAP mailbox. The sync
# engine only ever reads an Account; it is never persisted by the engine.
#
# IMPORTANT: The secret may be left empty. In that case it is looked up in
# the system keyring at connect time using the 'keyring' library, which
# keeps passwords out of config files.
# =============================================================================

from dataclasses import dataclass

import keyring


# Connection security modes understood by the IMAP client
SECURITY_MODES = ("ssl", "starttls", "none")


@dataclass(frozen=True)
class Account:
    """
    Connection and credential settings for a single IMAP account.

    Attributes:
        id: Unique identifier for this account (e.g., "personal", "work").
            Used as the storage partition key and for keyring lookups.
        host: Hostname of the IMAP server (e.g., "imap.gmail.com").
        port: Port for the IMAP connection. Standard ports:
              - 993 for IMAP over SSL/TLS (recommended)
              - 143 for plain IMAP, optionally upgraded with STARTTLS
        user: Login name, usually the email address.
        secret: Password or app password. Empty means "ask the keyring".
        security: Connection security ("ssl", "starttls" or "none").

        connect_timeout: Seconds allowed for the TCP/TLS handshake.
        auth_timeout: Seconds allowed for LOGIN to complete.
        command_timeout: Seconds allowed for any single IMAP command.
        idle_timeout: Seconds a pooled connection may sit unused before it
                      is considered stale and replaced.

    Example:
        >>> account = Account(
        ...     id="personal",
        ...     host="imap.example.com",
        ...     user="user@example.com",
        ...     secret="app-password",
        ... )
    """

    # Identification
    id: str
    host: str
    user: str
    secret: str = ""
    port: int = 993                     # Default to SSL port
    security: str = "ssl"               # "ssl", "starttls" or "none"

    # Timeouts (seconds)
    connect_timeout: float = 10.0
    auth_timeout: float = 5.0
    command_timeout: float = 30.0
    idle_timeout: float = 300.0

    def __post_init__(self) -> None:
        """Validate the security mode."""
        if self.security not in SECURITY_MODES:
            raise ValueError(
                f"Unknown security mode {self.security!r}, "
                f"expected one of {', '.join(SECURITY_MODES)}"
            )

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring password storage.

        Passwords can be managed with the keyring CLI:
            keyring set mailsync:personal user@example.com
        """
        return f"mailsync:{self.id}"

    def resolve_secret(self) -> str | None:
        """
        Return the secret, falling back to the system keyring.

        Returns:
            The password, or None if neither the account nor the keyring has one.
        """
        if self.secret:
            return self.secret
        return keyring.get_password(self.keyring_service, self.user)

    def __str__(self) -> str:
        return f"{self.id} <{self.user}@{self.host}>"

    def __repr__(self) -> str:
        # Never include the secret
        return (
            f"Account(id={self.id!r}, user={self.user!r}, "
            f"imap={self.host}:{self.port}, security={self.security!r})"
        )
