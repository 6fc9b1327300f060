import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from fastapi import HTTPException, status
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailledger.core.config import settings
from mailledger.core.constants import MailProvider
from mailledger.core.exceptions import OAuthStateError, ProviderError
from mailledger.core.security import SecurityUtils
from mailledger.models.email_account import EmailAccount
from mailledger.services.oauth_state import OAuthStateStore, oauth_state_store
from mailledger.services.providers.base import MailProviderClient
from mailledger.services.providers.registry import get_provider_client
from mailledger.services.token_service import TokenLifecycleManager, account_status
from mailledger.utils.dates import utcnow

logger = logging.getLogger(__name__)


def parse_provider(provider: str) -> MailProvider:
    try:
        return MailProvider(provider.upper())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported provider: {provider}",
        )


def to_response(account: EmailAccount) -> dict:
    return {
        "id": account.id,
        "provider": account.provider,
        "email_address": account.email_address,
        "is_active": account.is_active,
        "status": account_status(account),
        "token_expires_at": account.token_expires_at,
        "last_sync_at": account.last_sync_at,
        "sync_from_date": account.sync_from_date,
        "total_emails_processed": account.total_emails_processed or 0,
        "total_transactions_extracted": account.total_transactions_extracted or 0,
        "created_at": account.created_at,
    }


# ==================== OAUTH HANDSHAKE ====================

def initiate_authorization(
    user_id: int,
    provider: MailProvider,
    state_store: Optional[OAuthStateStore] = None,
    client_factory: Optional[Callable[..., MailProviderClient]] = None,
) -> dict:
    client_factory = client_factory or get_provider_client
    client = client_factory(provider)
    if state_store is None:
        state_store = oauth_state_store
    state = SecurityUtils.generate_state()
    state_store.put(state, user_id, provider)
    logger.info(f"Authorization started for user {user_id} with {provider.value}")
    return {"authorization_url": client.authorization_url(state), "state": state}


def complete_authorization(
    db: Session,
    provider: MailProvider,
    code: str,
    state: str,
    state_store: Optional[OAuthStateStore] = None,
    client_factory: Optional[Callable[..., MailProviderClient]] = None,
) -> EmailAccount:
    """
    Finish the OAuth callback: consume the state, exchange the code and
    upsert the (user, provider, address) account. Reconnecting reactivates
    the existing row and replaces its tokens.
    """
    if state_store is None:
        state_store = oauth_state_store
    try:
        pending = state_store.pop(state, provider)
    except OAuthStateError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    client_factory = client_factory or get_provider_client
    client = client_factory(provider)
    try:
        grant = client.exchange_code(code)
        email_address = client.user_email(grant.access_token)
    except ProviderError as exc:
        logger.error(f"{provider.value} authorization failed for user {pending.user_id}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Authorization with {provider.value} failed",
        )

    tokens = TokenLifecycleManager(db, client_factory=client_factory)
    account = _find_account(db, pending.user_id, provider, email_address)
    if account is None:
        account = EmailAccount(
            user_id=pending.user_id,
            provider=provider,
            email_address=email_address,
            is_active=True,
            sync_from_date=utcnow() - timedelta(days=settings.SYNC_LOOKBACK_DAYS),
            total_emails_processed=0,
            total_transactions_extracted=0,
        )
        db.add(account)
    else:
        account.is_active = True

    tokens.store_grant(account, grant)
    try:
        db.commit()
    except IntegrityError:
        # concurrent callback for the same mailbox won the insert
        db.rollback()
        account = _find_account(db, pending.user_id, provider, email_address)
        account.is_active = True
        tokens.store_grant(account, grant)
        db.commit()

    db.refresh(account)
    logger.info(f"[{account.id}] Connected {provider.value} account {SecurityUtils.mask(email_address)}")
    return account


def _find_account(db: Session, user_id: int, provider: MailProvider, email_address: str) -> Optional[EmailAccount]:
    return db.query(EmailAccount).filter(
        EmailAccount.user_id == user_id,
        EmailAccount.provider == provider,
        EmailAccount.email_address == email_address,
    ).first()


# ==================== USER OPERATIONS ====================

def list_accounts(db: Session, user_id: int) -> list[EmailAccount]:
    return (
        db.query(EmailAccount)
        .filter(EmailAccount.user_id == user_id)
        .order_by(EmailAccount.created_at.desc(), EmailAccount.id.desc())
        .all()
    )


def get_account_for_user(db: Session, account_id: int, user_id: int) -> EmailAccount:
    account = db.query(EmailAccount).filter(
        EmailAccount.id == account_id,
        EmailAccount.user_id == user_id,
    ).first()
    if not account:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Email account not found",
        )
    return account


def disconnect_account(db: Session, account_id: int, user_id: int) -> EmailAccount:
    account = get_account_for_user(db, account_id, user_id)
    TokenLifecycleManager(db).deactivate(account, "disconnected by user")
    db.refresh(account)
    return account


# ==================== SCHEDULER QUERIES ====================

def accounts_due_for_sync(db: Session, interval_seconds: int, now: Optional[datetime] = None) -> list[int]:
    cutoff = (now or utcnow()) - timedelta(seconds=interval_seconds)
    rows = db.query(EmailAccount.id).filter(
        EmailAccount.is_active.is_(True),
        or_(EmailAccount.last_sync_at.is_(None), EmailAccount.last_sync_at < cutoff),
    ).order_by(EmailAccount.id).all()
    return [r[0] for r in rows]


def accounts_with_expired_tokens(db: Session, now: Optional[datetime] = None) -> list[int]:
    rows = db.query(EmailAccount.id).filter(
        EmailAccount.is_active.is_(True),
        EmailAccount.token_expires_at < (now or utcnow()),
    ).order_by(EmailAccount.id).all()
    return [r[0] for r in rows]


def record_sync(
    db: Session,
    account_id: int,
    emails_seen: int,
    transactions_extracted: int,
    now: Optional[datetime] = None,
    sync_from: Optional[datetime] = None,
) -> None:
    """Fold one run's counters into the account and stamp last_sync_at in a single UPDATE."""
    values = {
        "total_emails_processed": EmailAccount.total_emails_processed + emails_seen,
        "total_transactions_extracted": EmailAccount.total_transactions_extracted + transactions_extracted,
        "last_sync_at": now or utcnow(),
    }
    if sync_from is not None:
        values["sync_from_date"] = sync_from

    db.execute(
        update(EmailAccount)
        .where(EmailAccount.id == account_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
