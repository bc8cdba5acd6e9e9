# =============================================================================
# Account Models
# =============================================================================
# A MailAccount is the stored description of one of a user's mailboxes on a
# remote server. It is owned by the account-management side of the webmail
# application; the sync engine only ever reads it.
#
# IMPORTANT: The password is stored encrypted. It is only decrypted by the
# CredentialResolver, which turns a MailAccount into a ConnectionProfile for
# the lifetime of a single network session.
# =============================================================================

from dataclasses import dataclass
from enum import Enum


class Protocol(str, Enum):
    """Retrieval protocol used by an account."""
    IMAP = "IMAP"
    POP3 = "POP3"


class Security(str, Enum):
    """
    Transport security for the incoming connection.

    SSL:      TLS from the first byte (usually 993 for IMAP, 995 for POP3)
    STARTTLS: plaintext connect, then upgrade (usually 143 / 110)
    NONE:     no encryption at all
    """
    SSL = "SSL"
    STARTTLS = "STARTTLS"
    NONE = "NONE"


@dataclass
class MailAccount:
    """
    A user's mail account as stored by the account-management collaborator.

    Attributes:
        user_id: Owner of the account.
        account_code: Short code identifying the account within the user.
        email: The account's email address.
        protocol: IMAP or POP3.
        host: Incoming server hostname.
        port: Incoming server port.
        security: Transport security mode.
        username: Login name. Empty means "log in with the email address".
        encrypted_password: Opaque encrypted secret.
        is_active: Inactive accounts are treated as missing.
        is_primary: The user's default account.
    """

    user_id: int
    account_code: str
    email: str
    protocol: Protocol = Protocol.IMAP
    host: str = ""
    port: int = 993
    security: Security = Security.SSL
    username: str = ""
    encrypted_password: str = ""
    is_active: bool = True
    is_primary: bool = False

    @property
    def login(self) -> str:
        """Returns the name used to authenticate."""
        return self.username or self.email

    def __repr__(self) -> str:
        """Developer-friendly representation (never shows the secret)."""
        return (
            f"MailAccount(user_id={self.user_id}, code={self.account_code!r}, "
            f"{self.protocol.value} {self.host}:{self.port} {self.security.value})"
        )


@dataclass
class ConnectionProfile:
    """
    Everything needed to open one session against a mail server.

    Created by the CredentialResolver; holds the decrypted password, so it
    should never be logged or persisted.
    """

    account_code: str
    email: str
    protocol: Protocol
    host: str
    port: int
    username: str
    password: str
    security: Security

    def __repr__(self) -> str:
        return (
            f"ConnectionProfile({self.account_code!r}, {self.protocol.value} "
            f"{self.username}@{self.host}:{self.port} {self.security.value})"
        )
