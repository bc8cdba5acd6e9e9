# =============================================================================
# Error Taxonomy
# =============================================================================
# Every failure the sync engine surfaces to callers is one of these types.
#
#   InboxSyncError
#   ├── ConfigurationError        account missing/inactive, bad secret, bad config
#   │   ├── AccountNotFoundError
#   │   └── DecryptionError
#   ├── ServiceError              the mail server misbehaved (retryable)
#   │   ├── TransientNetworkError connect / authenticate / timeout
#   │   └── MailboxError          mailbox could not be opened
#   ├── MessageParseError         one malformed message (recovered locally)
#   └── PersistenceError          cache or watermark write failed
#
# Each error carries a short, safe `user_message` for callers. Protocol
# detail and stack traces only go to the server-side log.
# =============================================================================

from typing import Any


class InboxSyncError(Exception):
    """
    Base exception for the inbox sync engine.

    Attributes:
        message: Detailed message (may include protocol detail, for logs).
        user_message: Safe message that can be shown to an end user.
        retryable: Whether the caller may retry the same call later.
    """

    user_message = "Mail synchronization failed"
    retryable = False

    def __init__(self, message: str | None = None, *, user_message: str | None = None) -> None:
        self.message = message or self.user_message
        if user_message:
            self.user_message = user_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the structure returned to external layers."""
        return {
            "error": self.__class__.__name__,
            "message": self.user_message,
            "retryable": self.retryable,
        }


# =============================================================================
# Configuration Errors (fatal to the call)
# =============================================================================

class ConfigurationError(InboxSyncError):
    """Raised when an account or the engine itself is misconfigured."""
    user_message = "Mail account is not configured correctly"


class AccountNotFoundError(ConfigurationError):
    """Raised when the account does not exist or is inactive."""
    user_message = "Email account not found or inactive"


class DecryptionError(ConfigurationError):
    """Raised when the stored account secret cannot be decrypted."""
    user_message = "Failed to decrypt account password"


# =============================================================================
# Service Errors (surfaced as retryable)
# =============================================================================

class ServiceError(InboxSyncError):
    """Raised when the mail server fails or answers unexpectedly."""
    user_message = "The mail server could not complete the request"
    retryable = True


class TransientNetworkError(ServiceError):
    """Raised on connect, authentication or transport timeout failures."""
    user_message = "Could not reach the mail server"


class MailboxError(ServiceError):
    """Raised when a mailbox cannot be opened."""
    user_message = "Could not open mailbox"


# =============================================================================
# Local Errors
# =============================================================================

class MessageParseError(InboxSyncError):
    """
    Raised when a single raw message cannot be normalized.

    Adapters catch this, log it and skip the message; it never aborts a batch.
    """
    user_message = "A message could not be parsed"


class PersistenceError(InboxSyncError):
    """Raised when the cache or sync tracker cannot be written."""
    user_message = "Could not save mail to the cache"
