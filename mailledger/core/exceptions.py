"""Exception hierarchy for the extraction pipeline."""


class MailLedgerError(Exception):
    """Base exception for all mailledger errors."""


# Mail providers
class ProviderError(MailLedgerError):
    """Base exception for mail provider operations."""


class ProviderAuthError(ProviderError):
    """The provider rejected our credentials (revoked or expired grant)."""


class TransientProviderError(ProviderError):
    """Timeout, rate limit or server-side failure; retried on the next run."""


class UnsupportedProviderError(ProviderError):
    """No client is registered for the requested provider."""


# Tokens
class TokenDecryptionError(MailLedgerError):
    """Stored token ciphertext could not be decrypted."""


class AccountDeactivatedError(MailLedgerError):
    """The account was deactivated and needs user re-authorization."""

    def __init__(self, account_id: int, reason: str):
        super().__init__(f"Account {account_id} deactivated: {reason}")
        self.account_id = account_id
        self.reason = reason


class OAuthStateError(MailLedgerError):
    """Authorization state is unknown, expired or already used."""


# Ledger
class LedgerApiError(MailLedgerError):
    """The downstream ledger failed to create a transaction."""
