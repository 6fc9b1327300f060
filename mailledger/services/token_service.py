import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from mailledger.core.config import settings
from mailledger.core.constants import AccountStatus
from mailledger.core.exceptions import (
    AccountDeactivatedError, ProviderAuthError, TokenDecryptionError,
)
from mailledger.core.security import TokenCipher, get_token_cipher
from mailledger.models.email_account import EmailAccount
from mailledger.schemas.mail_message import TokenGrant
from mailledger.services.providers.base import MailProviderClient
from mailledger.services.providers.registry import get_provider_client
from mailledger.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)


def needs_refresh(account: EmailAccount, skew_seconds: Optional[int] = None, now: Optional[datetime] = None) -> bool:
    """True when the access token is missing an expiry, expired, or expires within the skew."""
    expires_at = as_utc(account.token_expires_at)
    if expires_at is None:
        return True
    skew = settings.TOKEN_REFRESH_SKEW_SECONDS if skew_seconds is None else skew_seconds
    return expires_at <= (now or utcnow()) + timedelta(seconds=skew)


def is_token_expired(account: EmailAccount, now: Optional[datetime] = None) -> bool:
    expires_at = as_utc(account.token_expires_at)
    return expires_at is not None and expires_at < (now or utcnow())


def account_status(account: EmailAccount, now: Optional[datetime] = None) -> str:
    if not account.is_active:
        return AccountStatus.DISCONNECTED.value
    if is_token_expired(account, now):
        return AccountStatus.TOKEN_EXPIRED.value
    if needs_refresh(account, now=now):
        return AccountStatus.NEEDS_REFRESH.value
    return AccountStatus.CONNECTED.value


class TokenLifecycleManager:
    """Owns encrypted token state for connected accounts."""

    def __init__(
        self,
        db: Session,
        cipher: Optional[TokenCipher] = None,
        client_factory: Callable[..., MailProviderClient] = get_provider_client,
    ):
        self.db = db
        self.cipher = cipher or get_token_cipher()
        self.client_factory = client_factory

    def store_grant(self, account: EmailAccount, grant: TokenGrant, now: Optional[datetime] = None) -> None:
        """Encrypt and attach a fresh grant; caller commits."""
        account.encrypted_access_token = self.cipher.encrypt(grant.access_token)
        # providers that do not rotate leave the existing refresh token in place
        if grant.refresh_token:
            account.encrypted_refresh_token = self.cipher.encrypt(grant.refresh_token)
        account.token_expires_at = (now or utcnow()) + timedelta(seconds=grant.expires_in)

    def deactivate(self, account: EmailAccount, reason: str) -> None:
        account.is_active = False
        account.encrypted_access_token = None
        account.encrypted_refresh_token = None
        account.token_expires_at = None
        self.db.commit()
        logger.warning(f"[{account.id}] Account deactivated: {reason}")

    def refresh(self, account: EmailAccount) -> str:
        """
        Exchange the stored refresh token for a new access token.

        A rejected or undecryptable refresh token deactivates the account and
        raises AccountDeactivatedError. Transient provider failures propagate
        untouched so the next run can try again.
        """
        try:
            refresh_token = self.cipher.decrypt(account.encrypted_refresh_token)
        except TokenDecryptionError as exc:
            self.deactivate(account, f"refresh token unusable ({exc})")
            raise AccountDeactivatedError(account.id, str(exc)) from exc

        client = self.client_factory(account.provider)
        try:
            grant = client.refresh_access_token(refresh_token)
        except ProviderAuthError as exc:
            self.deactivate(account, f"refresh rejected by provider ({exc})")
            raise AccountDeactivatedError(account.id, str(exc)) from exc

        self.store_grant(account, grant)
        self.db.commit()
        logger.info(f"[{account.id}] Access token refreshed, expires at {account.token_expires_at}")
        return grant.access_token

    def access_token(self, account: EmailAccount) -> str:
        """Usable access token, refreshing proactively when close to expiry."""
        if needs_refresh(account):
            return self.refresh(account)
        try:
            return self.cipher.decrypt(account.encrypted_access_token)
        except TokenDecryptionError as exc:
            self.deactivate(account, f"access token unusable ({exc})")
            raise AccountDeactivatedError(account.id, str(exc)) from exc

    def invalidate_access_token(self, account: EmailAccount) -> None:
        """Force a refresh on next use (provider rejected the current access token)."""
        account.token_expires_at = None
        self.db.commit()
